"""Shared fixtures: a small Traktor collection and in-memory storage fakes."""

import asyncio

import pytest

from mcp_crate.collection import CollectionEngine
from mcp_crate.persistence import BlobWrite, PersistenceManager

SAMPLE_NML = """<?xml version="1.0" encoding="UTF-8" standalone="no" ?>
<NML VERSION="19">
  <HEAD COMPANY="www.native-instruments.com" PROGRAM="Traktor"></HEAD>
  <MUSICFOLDERS></MUSICFOLDERS>
  <COLLECTION ENTRIES="4">
    <ENTRY MODIFIED_DATE="2024/3/1" TITLE="One More Time" ARTIST="Daft Punk">
      <LOCATION DIR="/:Music/:" FILE="one.mp3" VOLUME="Macintosh HD" VOLUMEID="Macintosh HD"></LOCATION>
      <ALBUM TRACK="1" TITLE="Discovery"></ALBUM>
      <INFO BITRATE="320000" GENRE="House" COMMENT="4A - 128" KEY="4A" PLAYCOUNT="3" RATING="255"></INFO>
      <TEMPO BPM="122.999969" BPM_QUALITY="100.000000"></TEMPO>
      <CUE_V2 NAME="AutoGrid" DISPL_ORDER="0" TYPE="4" START="52.5" LEN="0" REPEATS="-1" HOTCUE="0"></CUE_V2>
    </ENTRY>
    <ENTRY MODIFIED_DATE="2024/3/1" TITLE="Around the World" ARTIST="Daft Punk">
      <LOCATION DIR="/:Music/:" FILE="two.mp3" VOLUME="Macintosh HD" VOLUMEID="Macintosh HD"></LOCATION>
      <INFO GENRE="House" COMMENT="[House] [Deep]"></INFO>
      <TEMPO BPM="121.000000" BPM_QUALITY="100.000000"></TEMPO>
    </ENTRY>
    <ENTRY MODIFIED_DATE="2024/3/1" TITLE="Strobe" ARTIST="deadmau5">
      <LOCATION DIR="/:Music/:" FILE="three.mp3" VOLUME="Macintosh HD" VOLUMEID="Macintosh HD"></LOCATION>
      <INFO GENRE="Progressive House" COMMENT="www.deadmau5.com deep house" RATING="153"></INFO>
    </ENTRY>
    <ENTRY MODIFIED_DATE="2024/3/1" TITLE="Lonely Track" ARTIST="Nobody">
      <LOCATION DIR="/:Music/:" FILE="four.mp3" VOLUME="Macintosh HD" VOLUMEID="Macintosh HD"></LOCATION>
    </ENTRY>
  </COLLECTION>
  <PLAYLISTS>
    <NODE TYPE="FOLDER" NAME="$ROOT">
      <SUBNODES COUNT="4">
        <NODE TYPE="FOLDER" NAME="House">
          <SUBNODES COUNT="2">
            <NODE TYPE="PLAYLIST" NAME="French Touch">
              <PLAYLIST ENTRIES="2" TYPE="LIST" UUID="0123456789abcdef0123456789abcdef">
                <ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:one.mp3"></PRIMARYKEY></ENTRY>
                <ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:two.mp3"></PRIMARYKEY></ENTRY>
              </PLAYLIST>
            </NODE>
            <NODE TYPE="PLAYLIST" NAME="French Touch">
              <PLAYLIST ENTRIES="1" TYPE="LIST" UUID="fedcba9876543210fedcba9876543210">
                <ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:two.mp3"></PRIMARYKEY></ENTRY>
              </PLAYLIST>
            </NODE>
          </SUBNODES>
        </NODE>
        <NODE TYPE="PLAYLIST" NAME="Progressive">
          <PLAYLIST ENTRIES="2" TYPE="LIST" UUID="00000000000000000000000000000001">
            <ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:three.mp3"></PRIMARYKEY></ENTRY>
            <ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:gone.mp3"></PRIMARYKEY></ENTRY>
          </PLAYLIST>
        </NODE>
        <NODE TYPE="FOLDER" NAME="Empty">
          <SUBNODES COUNT="0"></SUBNODES>
        </NODE>
        <NODE TYPE="SMARTLIST" NAME="Recent">
          <SMARTLIST UUID="00000000000000000000000000000002">
            <SEARCH_EXPRESSION VERSION="1" QUERY="$IMPORTDATE &gt; 2024/1/1"></SEARCH_EXPRESSION>
          </SMARTLIST>
        </NODE>
      </SUBNODES>
    </NODE>
  </PLAYLISTS>
</NML>
"""

SAMPLE_BYTES = SAMPLE_NML.encode("utf-8")
LOCATION = "https://blobs.example/collections/dj/collection.nml"


def track_key(file_name):
    return f"Macintosh HD/:Music/:{file_name}"


class FakeBlobStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.writes = []

    async def put(self, key, data, content_type):
        if self.fail:
            raise OSError("disk full")
        self.writes.append((key, data, content_type))
        return BlobWrite(url=f"https://blobs.example/{key}?v={len(self.writes)}")


class FakePointerStore:
    def __init__(self):
        self.records = {}

    async def update(self, owner_id, document_location):
        self.records[owner_id] = document_location

    async def get(self, owner_id):
        return self.records.get(owner_id)


class FakeFetcher:
    def __init__(self, data=SAMPLE_BYTES):
        self.data = data
        self.calls = 0

    async def __call__(self, location):
        self.calls += 1
        await asyncio.sleep(0)
        return self.data


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def pointer_store():
    return FakePointerStore()


@pytest.fixture
def make_engine(blob_store, pointer_store):
    """Durable engine over the sample collection, not yet loaded."""
    def _make(fetcher=None, owner_id="dj"):
        return CollectionEngine(
            owner_id,
            LOCATION,
            persistence=PersistenceManager(blob_store, pointer_store),
            fetcher=fetcher or FakeFetcher(),
        )
    return _make


@pytest.fixture
def engine(make_engine):
    eng = make_engine()
    asyncio.run(eng.load())
    return eng


@pytest.fixture
def memory_engine():
    eng = CollectionEngine("dj", "memory:dj")
    eng.load_from_bytes(SAMPLE_BYTES)
    return eng
