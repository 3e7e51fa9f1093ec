"""
Traktor NML document layer

Parses a collection file into the frozen node tree plus a catalog of mutable
``TrackEntry`` views, and writes the tree back into the document.

Everything the engine doesn't model (HEAD, MUSICFOLDERS, cue points, loudness,
smartlist queries) stays in the ElementTree and is written out untouched.
Attribute values are kept verbatim, leading spaces included: Traktor users
prefix folder names with spaces to control sort order.
"""

import uuid
import xml.etree.ElementTree as ET
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from loguru import logger

from .errors import DocumentError
from .models import (
    FolderNode,
    FullTrackRow,
    PlaylistEntry,
    PlaylistNode,
    SmartListNode,
    TrackFieldUpdates,
)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="no" ?>\n'
ROOT_NAMES = ("$ROOT", "ROOT")
DEFAULT_ROOT_NAME = "$ROOT"

# field name -> (child element or None for the ENTRY itself, attribute)
TRACK_FIELDS: Dict[str, Tuple[Optional[str], str]] = {
    "title":        (None, "TITLE"),
    "artist":       (None, "ARTIST"),
    "album":        ("ALBUM", "TITLE"),
    "album_track":  ("ALBUM", "TRACK"),
    "bpm":          ("TEMPO", "BPM"),
    "bpm_quality":  ("TEMPO", "BPM_QUALITY"),
    "bitrate":      ("INFO", "BITRATE"),
    "genre":        ("INFO", "GENRE"),
    "label":        ("INFO", "LABEL"),
    "comment":      ("INFO", "COMMENT"),
    "rating":       ("INFO", "RATING"),
    "key":          ("INFO", "KEY"),
    "playcount":    ("INFO", "PLAYCOUNT"),
    "playtime":     ("INFO", "PLAYTIME"),
    "import_date":  ("INFO", "IMPORT_DATE"),
    "last_played":  ("INFO", "LAST_PLAYED"),
    "release_date": ("INFO", "RELEASE_DATE"),
    "filesize":     ("INFO", "FILESIZE"),
}


def new_playlist_uuid() -> str:
    return uuid.uuid4().hex


def _raw_xml(element: ET.Element) -> str:
    """Serialize one element without the whitespace that trails it."""
    tail = element.tail
    element.tail = None
    try:
        return ET.tostring(element, encoding="unicode")
    finally:
        element.tail = tail


def _to_float(value: str) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number or None


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------

class TrackEntry:
    """Mutable view over one ``COLLECTION/ENTRY`` element."""

    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def key(self) -> Optional[str]:
        location = self.element.find("LOCATION")
        if location is None:
            return None
        return (
            location.get("VOLUME", "")
            + location.get("DIR", "")
            + location.get("FILE", "")
        )

    def get(self, field: str) -> str:
        child, attr = TRACK_FIELDS[field]
        element = self.element if child is None else self.element.find(child)
        if element is None:
            return ""
        return element.get(attr, "")

    def set(self, field: str, value: Optional[Union[str, float]]) -> None:
        """Write ``value``; empty or None removes the attribute."""
        child, attr = TRACK_FIELDS[field]
        element = self.element if child is None else self.element.find(child)
        if value is None or value == "":
            if element is not None:
                element.attrib.pop(attr, None)
            return
        if element is None:
            element = ET.SubElement(self.element, child)
        element.set(attr, value if isinstance(value, str) else f"{value:.6f}")

    @property
    def comment(self) -> str:
        return self.get("comment")

    @comment.setter
    def comment(self, value: Optional[str]) -> None:
        self.set("comment", value)

    @property
    def musical_key(self) -> str:
        key = self.get("key")
        if key:
            return key
        musical = self.element.find("MUSICAL_KEY")
        return musical.get("VALUE", "") if musical is not None else ""

    @property
    def filepath(self) -> str:
        return self.key or ""

    def apply_updates(self, updates: TrackFieldUpdates) -> None:
        for field, value in updates.provided().items():
            self.set(field, value)

    def to_full_row(self, key: str) -> FullTrackRow:
        return FullTrackRow(
            track_key=key,
            title=self.get("title"),
            artist=self.get("artist"),
            album=self.get("album"),
            album_track=self.get("album_track"),
            bpm=_to_float(self.get("bpm")),
            bpm_quality=self.get("bpm_quality"),
            rating=self.get("rating"),
            comment=self.get("comment"),
            genre=self.get("genre"),
            label=self.get("label"),
            musical_key=self.musical_key,
            playcount=self.get("playcount"),
            playtime=self.get("playtime"),
            import_date=self.get("import_date"),
            last_played=self.get("last_played"),
            release_date=self.get("release_date"),
            bitrate=self.get("bitrate"),
            filesize=self.get("filesize"),
            filepath=self.filepath,
        )


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class NmlDocument:
    """A parsed collection file. Owns the ElementTree; the node tree lives in the engine."""

    def __init__(self, root: ET.Element) -> None:
        self.root = root
        self.collection = self._section("COLLECTION")
        self.playlists = self._section("PLAYLISTS")

    def _section(self, tag: str) -> ET.Element:
        section = self.root.find(tag)
        if section is None:
            logger.warning(f"{tag} section missing from collection, creating an empty one")
            section = ET.SubElement(self.root, tag)
        return section

    def entries(self) -> Iterator[TrackEntry]:
        for element in self.collection.findall("ENTRY"):
            yield TrackEntry(element)


def parse_document(data: Union[bytes, str]) -> NmlDocument:
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise DocumentError(f"Collection is not valid XML: {e}") from e
    if root.tag != "NML":
        raise DocumentError(f"Expected an NML document, found <{root.tag}>")
    return NmlDocument(root)


# ---------------------------------------------------------------------------
# Node tree <-> XML
# ---------------------------------------------------------------------------

def _parse_node(element: ET.Element, next_id: Callable[[], int]):
    kind = element.get("TYPE")
    name = element.get("NAME")

    if kind == "FOLDER":
        subnodes = element.find("SUBNODES")
        children = []
        if subnodes is not None:
            for child_el in subnodes.findall("NODE"):
                child = _parse_node(child_el, next_id)
                if child is not None:
                    children.append(child)
            declared = subnodes.get("COUNT")
            if declared is not None and declared != str(len(children)):
                logger.debug(
                    f"Folder '{name}' declares COUNT={declared} but holds {len(children)} nodes"
                )
        return FolderNode(node_id=next_id(), name=name, children=tuple(children))

    if kind == "PLAYLIST":
        playlist = element.find("PLAYLIST")
        entries: List[PlaylistEntry] = []
        playlist_uuid = list_type = None
        if playlist is not None:
            playlist_uuid = playlist.get("UUID")
            list_type = playlist.get("TYPE")
            for entry_el in playlist.findall("ENTRY"):
                primary = entry_el.find("PRIMARYKEY")
                if primary is None or not primary.get("KEY"):
                    continue
                extra = tuple(_raw_xml(el) for el in entry_el if el.tag != "PRIMARYKEY")
                entries.append(PlaylistEntry(
                    key=primary.get("KEY"),
                    key_type=primary.get("TYPE", "TRACK"),
                    extra_xml=extra,
                ))
        return PlaylistNode(
            node_id=next_id(),
            name=name,
            uuid=playlist_uuid or new_playlist_uuid(),
            list_type=list_type or "LIST",
            entries=tuple(entries),
        )

    if kind == "SMARTLIST":
        smartlist = element.find("SMARTLIST")
        return SmartListNode(
            node_id=next_id(),
            name=name,
            raw_xml=_raw_xml(smartlist) if smartlist is not None else "",
        )

    logger.warning(f"Skipping node '{name}' of unknown type {kind!r}")
    return None


def _root_element(playlists: ET.Element) -> Optional[ET.Element]:
    for element in playlists.findall("NODE"):
        if element.get("TYPE") == "FOLDER" and element.get("NAME") in ROOT_NAMES:
            return element
    return None


def parse_node_tree(playlists: ET.Element, next_id: Callable[[], int]) -> FolderNode:
    """
    Build the node tree from the PLAYLISTS section and return its root folder.

    An empty section yields an empty root; top-level nodes without a
    ``$ROOT``/``ROOT`` folder among them are wrapped in a new root.
    """
    root_element = _root_element(playlists)
    if root_element is not None:
        return _parse_node(root_element, next_id)

    top_level = playlists.findall("NODE")
    children = [node for node in (_parse_node(el, next_id) for el in top_level) if node is not None]
    if children:
        logger.info(f"No root folder found, wrapping {len(children)} top-level nodes")
        name = "ROOT"
    else:
        name = DEFAULT_ROOT_NAME
    return FolderNode(node_id=next_id(), name=name, children=tuple(children))


def _node_element(node) -> ET.Element:
    element = ET.Element("NODE", {"TYPE": node.kind})
    if node.name is not None:
        element.set("NAME", node.name)

    if isinstance(node, FolderNode):
        subnodes = ET.SubElement(element, "SUBNODES", {"COUNT": str(node.count)})
        for child in node.children:
            subnodes.append(_node_element(child))

    elif isinstance(node, PlaylistNode):
        playlist = ET.SubElement(element, "PLAYLIST", {
            "ENTRIES": str(len(node.entries)),
            "TYPE": node.list_type,
            "UUID": node.uuid,
        })
        for entry in node.entries:
            entry_el = ET.SubElement(playlist, "ENTRY")
            ET.SubElement(entry_el, "PRIMARYKEY", {"TYPE": entry.key_type, "KEY": entry.key})
            for raw in entry.extra_xml:
                entry_el.append(ET.fromstring(raw))

    elif node.raw_xml:
        element.append(ET.fromstring(node.raw_xml))

    return element


def serialize_document(document: NmlDocument, root: FolderNode) -> bytes:
    """
    Write ``root`` into the document and return the full file contents.

    Only the root folder element is replaced; other top-level nodes beside
    it stay where they were.
    """
    playlists = document.playlists
    element = _node_element(root)
    current = _root_element(playlists)
    if current is not None:
        position = list(playlists).index(current)
        playlists.remove(current)
        playlists.insert(position, element)
    else:
        # no root on disk: every top-level node was wrapped into ``root``
        for child in list(playlists):
            playlists.remove(child)
        playlists.append(element)
    document.collection.set("ENTRIES", str(len(document.collection.findall("ENTRY"))))

    ET.indent(document.root, space="  ")
    body = ET.tostring(document.root, encoding="unicode")
    return (XML_DECLARATION + body + "\n").encode("utf-8")
