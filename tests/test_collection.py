"""Unit tests for the Collection Engine."""

import asyncio

import pytest

from conftest import LOCATION, SAMPLE_BYTES, FakeBlobStore, FakeFetcher, track_key
from mcp_crate.collection import CollectionEngine
from mcp_crate.errors import (
    CollectionNotLoadedError,
    NodeNotFoundError,
    PersistenceError,
    SessionExpiredError,
    TrackNotFoundError,
    TypeMismatchError,
    UpstreamUnavailableError,
)
from mcp_crate.models import FolderNode, MoveRequest, TrackFieldUpdates, TrackUpdate
from mcp_crate.nml import parse_document
from mcp_crate.persistence import PersistenceManager, PersistenceMode
from mcp_crate.tree import PathIndex, iter_nodes


def run(coro):
    return asyncio.run(coro)


def child_names(engine, path="root"):
    sidebar = run(engine.get_sidebar())
    node = sidebar.tree
    for part in path.split("/")[1:]:
        node = next(c for c in node.children if c.path.endswith("/" + part))
    return [c.name for c in node.children]


def assert_counts_consistent(root):
    for node in iter_nodes(root):
        if isinstance(node, FolderNode):
            assert node.count == len(node.children)


class TestLoading:
    def test_load(self, engine):
        assert engine.is_loaded
        assert engine.track_count == 4
        assert engine.mode is PersistenceMode.DURABLE

    def test_concurrent_loads_fetch_once(self, make_engine):
        fetcher = FakeFetcher()
        eng = make_engine(fetcher=fetcher)

        async def load_many():
            await asyncio.gather(eng.load(), eng.load(), eng.get_sidebar())

        run(load_many())
        assert fetcher.calls == 1
        run(eng.load())
        assert fetcher.calls == 1

    def test_cancelled_caller_keeps_shared_load(self, make_engine):
        async def scenario():
            release = asyncio.Event()

            async def slow_fetch(location):
                await release.wait()
                return SAMPLE_BYTES

            eng = make_engine(fetcher=slow_fetch)
            first = asyncio.ensure_future(eng.load())
            second = asyncio.ensure_future(eng.load())
            await asyncio.sleep(0)
            first.cancel()
            await asyncio.sleep(0)
            release.set()
            await second
            return eng, first

        eng, first = run(scenario())
        assert first.cancelled()
        assert eng.is_loaded
        assert eng.track_count == 4

    def test_upstream_missing_leaves_unloaded(self, make_engine):
        async def missing(location):
            raise UpstreamUnavailableError("gone")

        eng = make_engine(fetcher=missing)
        sidebar = run(eng.get_sidebar())
        assert sidebar.tree is None
        assert sidebar.stats.track_count == 0
        with pytest.raises(CollectionNotLoadedError):
            run(eng.get_all_tracks())

    def test_last_duplicate_key_wins(self, make_engine):
        duplicated = SAMPLE_BYTES.replace(
            b"</COLLECTION>",
            b'<ENTRY TITLE="Impostor"><LOCATION DIR="/:Music/:" FILE="one.mp3" VOLUME="Macintosh HD"></LOCATION></ENTRY></COLLECTION>',
        )
        eng = make_engine(fetcher=FakeFetcher(duplicated))
        rows = {row.track_key: row for row in run(eng.get_all_tracks())}
        assert len(rows) == 4
        assert rows[track_key("one.mp3")].title == "Impostor"

    def test_durable_needs_persistence(self):
        with pytest.raises(ValueError):
            CollectionEngine("dj", LOCATION)

    def test_transient_without_upload_expired(self):
        eng = CollectionEngine("dj", "memory:dj")
        assert eng.mode is PersistenceMode.TRANSIENT
        with pytest.raises(SessionExpiredError):
            run(eng.get_sidebar())


class TestReads:
    def test_sidebar(self, engine):
        sidebar = run(engine.get_sidebar())
        assert sidebar.stats.playlist_count == 3
        assert sidebar.stats.track_count == 4
        assert sidebar.tree.path == "root"

    def test_index_cached_until_change(self, engine):
        run(engine.get_sidebar())
        first = engine._path_index()
        assert engine._path_index() is first
        run(engine.create_folder("root", "Techno"))
        assert engine._path_index() is not first

    def test_playlist_tracks(self, engine):
        result = run(engine.get_playlist_tracks("root/progressive-4"))
        assert result.playlist_name == "Progressive"
        strobe, missing = result.tracks
        assert strobe.title == "Strobe"
        assert strobe.rating == 153
        assert strobe.bpm is None
        assert missing.key == track_key("gone.mp3")
        assert missing.title == "Missing Track"

    def test_playlist_tracks_of_folder(self, engine):
        with pytest.raises(TypeMismatchError):
            run(engine.get_playlist_tracks("root/house-1"))

    def test_all_tracks(self, engine):
        rows = run(engine.get_all_tracks())
        assert [r.title for r in rows] == ["One More Time", "Around the World", "Strobe", "Lonely Track"]

    def test_unmodified_document_is_original_bytes(self, engine):
        assert run(engine.get_document()) == SAMPLE_BYTES

    def test_unique_comments(self, engine):
        result = run(engine.get_unique_comments())
        assert result.key_bpm == ["4A - 128"]
        assert result.genre == ["[House] [Deep]"]
        assert [c.comment for c in result.combination] == ["www.deadmau5.com deep house"]
        assert result.other == []


class TestTreeMutations:
    def test_create_folder(self, engine, blob_store):
        run(engine.create_folder("root", "Techno"))
        assert child_names(engine)[0] == "Techno"
        assert len(blob_store.writes) == 1
        assert_counts_consistent(engine.root)

    def test_create_playlist(self, engine):
        run(engine.create_playlist("root/empty-5", "Warmup"))
        sidebar = run(engine.get_sidebar())
        empty = next(c for c in sidebar.tree.children if c.name == "Empty")
        assert [c.name for c in empty.children] == ["Warmup"]
        assert empty.children[0].playlist_size == 0

    def test_create_in_playlist_rejected(self, engine, blob_store):
        with pytest.raises(TypeMismatchError):
            run(engine.create_playlist("root/progressive-4", "Nope"))
        assert blob_store.writes == []

    def test_create_in_unknown_path(self, engine):
        with pytest.raises(NodeNotFoundError):
            run(engine.create_folder("root/missing-42", "Nope"))

    def test_rename(self, engine):
        run(engine.rename_playlist("root/progressive-4", "Progressive House"))
        assert "Progressive House" in child_names(engine)

    def test_rename_folder_rejected(self, engine):
        with pytest.raises(TypeMismatchError, match="Only playlists can be renamed"):
            run(engine.rename_playlist("root/house-1", "Deep"))

    def test_move(self, engine):
        run(engine.move_playlist("root/progressive-4", "root/empty-5"))
        assert child_names(engine) == ["House", "Empty", "Recent"]
        assert run(engine.get_sidebar()).stats.playlist_count == 3
        assert_counts_consistent(engine.root)

    def test_move_to_playlist_leaves_tree_intact(self, engine, blob_store):
        before = engine.root
        with pytest.raises(TypeMismatchError):
            run(engine.move_playlist("root/house-1/french-touch-2", "root/progressive-4"))
        assert engine.root is before
        assert blob_store.writes == []

    def test_move_folder_rejected(self, engine):
        with pytest.raises(TypeMismatchError, match="Only playlists can be moved"):
            run(engine.move_playlist("root/house-1", "root/empty-5"))

    def test_duplicate(self, engine):
        result = run(engine.duplicate_playlist("root/house-1/french-touch-2", "root/empty-5"))
        assert result.success
        assert result.created_entries == 2
        copy = run(engine.get_playlist_tracks("root/empty-5/french-touch-copy-6"))
        assert copy.playlist_name == "French Touch Copy"
        assert [t.key for t in copy.tracks] == [track_key("one.mp3"), track_key("two.mp3")]

    def test_duplicate_keeps_entry_details(self, make_engine):
        detailed = SAMPLE_BYTES.replace(
            b'<ENTRY><PRIMARYKEY TYPE="TRACK" KEY="Macintosh HD/:Music/:one.mp3"></PRIMARYKEY></ENTRY>',
            b'<ENTRY><PRIMARYKEY TYPE="STEM" KEY="Macintosh HD/:Music/:one.mp3"></PRIMARYKEY>'
            b'<EXTENDEDDATA DECK="1"></EXTENDEDDATA></ENTRY>',
            1,
        )
        eng = make_engine(fetcher=FakeFetcher(detailed))
        run(eng.duplicate_playlist("root/house-1/french-touch-2", "root", name="Again"))
        index = PathIndex(eng.root)
        source = index.get("root/house-2/french-touch-3").node
        copy = index.get("root/again-1").node
        assert copy.entries == source.entries
        assert copy.entries[0].key_type == "STEM"
        assert "EXTENDEDDATA" in copy.entries[0].extra_xml[0]

    def test_duplicate_gets_fresh_uuid(self, engine):
        run(engine.duplicate_playlist("root/house-1/french-touch-2", "root", name="Again"))
        uuids = [n.uuid for n in iter_nodes(engine.root) if n.kind == "PLAYLIST"]
        assert len(set(uuids)) == len(uuids) == 4

    def test_duplicate_folder_rejected(self, engine):
        with pytest.raises(TypeMismatchError, match="Source must be a playlist"):
            run(engine.duplicate_playlist("root/house-1", "root"))

    def test_orphans(self, engine):
        result = run(engine.create_orphans_playlist("root"))
        assert result.success
        assert result.created_entries == 1
        orphans = run(engine.get_playlist_tracks("root/orphans-generated-1"))
        assert [t.key for t in orphans.tracks] == [track_key("four.mp3")]

    def test_orphans_complete(self, engine):
        run(engine.create_orphans_playlist("root", name="Orphans"))
        referenced = set()
        for node in iter_nodes(engine.root):
            if node.kind == "PLAYLIST":
                referenced.update(node.entry_keys())
        catalog = {row.track_key for row in run(engine.get_all_tracks())}
        assert catalog <= referenced

    def test_no_orphans_no_write(self, engine, blob_store):
        run(engine.create_orphans_playlist("root"))
        writes = len(blob_store.writes)
        result = run(engine.create_orphans_playlist("root"))
        assert not result.success
        assert result.created_entries == 0
        assert len(blob_store.writes) == writes

    def test_delete(self, engine):
        result = run(engine.delete_nodes(["root/progressive-4", "root/recent-6"]))
        assert result.deleted_count == 2
        assert child_names(engine) == ["House", "Empty"]
        assert_counts_consistent(engine.root)

    def test_delete_skips_unknown_and_root(self, engine):
        result = run(engine.delete_nodes(["root/nope-9", "root", "root/empty-5"]))
        assert result.deleted_count == 1
        assert result.skipped == ["root/nope-9", "root"]

    def test_delete_folder_and_its_child(self, engine):
        result = run(engine.delete_nodes(["root/house-1", "root/house-1/french-touch-2"]))
        assert result.deleted_count == 1
        assert result.skipped == ["root/house-1/french-touch-2"]
        # catalog untouched
        assert engine.track_count == 4


class TestBatchMove:
    def test_paths_resolved_against_starting_tree(self, engine, blob_store):
        before = PathIndex(engine.root)
        first_id = before.get("root/house-1/french-touch-2").node_id
        second_id = before.get("root/house-1/french-touch-3").node_id
        moves = [
            MoveRequest(source_path="root/house-1/french-touch-2", target_folder_path="root/empty-5"),
            MoveRequest(source_path="root/house-1/french-touch-3", target_folder_path="root/empty-5"),
            MoveRequest(source_path="root/progressive-4", target_folder_path="root/house-1"),
        ]
        result = run(engine.move_playlist_batch(moves))
        assert result.moved_count == 3
        assert all(r.success for r in result.results)
        assert len(blob_store.writes) == 1

        house, empty, _ = engine.root.children
        assert [c.name for c in house.children] == ["Progressive"]
        # each move prepends, so the second move lands first
        assert [c.node_id for c in empty.children] == [second_id, first_id]
        assert_counts_consistent(engine.root)

    def test_failures_reported_per_item(self, engine):
        moves = [
            MoveRequest(source_path="root/house-1", target_folder_path="root/empty-5"),
            MoveRequest(source_path="root/nope-9", target_folder_path="root/empty-5"),
            MoveRequest(source_path="root/progressive-4", target_folder_path="root/empty-5"),
        ]
        result = run(engine.move_playlist_batch(moves))
        assert [r.success for r in result.results] == [False, False, True]
        assert result.results[0].error == "Only playlists can be moved"
        assert "root/nope-9" in result.results[1].error
        assert result.moved_count == 1

    def test_missing_target_fails_only_its_move(self, engine, blob_store):
        moves = [
            MoveRequest(source_path="root/house-1/french-touch-2", target_folder_path="root/empty-5"),
            MoveRequest(source_path="root/progressive-4", target_folder_path="root/missing-9"),
            MoveRequest(source_path="root/house-1/french-touch-3", target_folder_path="root/empty-5"),
        ]
        result = run(engine.move_playlist_batch(moves))
        assert [r.success for r in result.results] == [True, False, True]
        assert "root/missing-9" in result.results[1].error
        assert result.moved_count == 2
        assert len(blob_store.writes) == 1

        house, progressive, empty, _ = engine.root.children
        assert house.children == ()
        assert progressive.name == "Progressive"
        assert [c.name for c in empty.children] == ["French Touch", "French Touch"]
        assert_counts_consistent(engine.root)

    def test_nothing_moved_no_write(self, engine, blob_store):
        moves = [MoveRequest(source_path="root/house-1", target_folder_path="root/empty-5")]
        result = run(engine.move_playlist_batch(moves))
        assert result.moved_count == 0
        assert blob_store.writes == []


class TestTrackMutations:
    def test_update_track(self, engine):
        run(engine.update_track(track_key("two.mp3"), TrackFieldUpdates(title="Around The World", rating="204")))
        rows = {r.track_key: r for r in run(engine.get_all_tracks())}
        assert rows[track_key("two.mp3")].title == "Around The World"
        assert rows[track_key("two.mp3")].rating == "204"
        assert rows[track_key("two.mp3")].comment == "[House] [Deep]"

    def test_update_unknown_track(self, engine, blob_store):
        with pytest.raises(TrackNotFoundError):
            run(engine.update_track("nope", TrackFieldUpdates(title="x")))
        assert blob_store.writes == []

    def test_update_batch(self, engine, blob_store):
        result = run(engine.update_tracks_batch([
            TrackUpdate(key=track_key("one.mp3"), updates=TrackFieldUpdates(genre="French House")),
            TrackUpdate(key="nope", updates=TrackFieldUpdates(genre="x")),
        ]))
        assert not result.success
        assert result.updated_count == 1
        assert [e.key for e in result.errors] == ["nope"]
        assert len(blob_store.writes) == 1

    def test_update_batch_all_unknown_no_write(self, engine, blob_store):
        result = run(engine.update_tracks_batch([TrackUpdate(key="nope", updates=TrackFieldUpdates(genre="x"))]))
        assert result.updated_count == 0
        assert blob_store.writes == []

    def test_comments_batch(self, engine):
        result = run(engine.update_comments_batch(["4A - 128", "[House] [Deep]"], "cleaned"))
        assert result.updated_count == 2
        comments = run(engine.get_unique_comments())
        assert comments.other == ["cleaned"]

    def test_comments_batch_clears(self, engine):
        run(engine.update_comments_batch(["4A - 128"], ""))
        rows = {r.track_key: r for r in run(engine.get_all_tracks())}
        assert rows[track_key("one.mp3")].comment == ""

    def test_comments_batch_exact_match_only(self, engine, blob_store):
        result = run(engine.update_comments_batch(["4a - 128", "4A"], "x"))
        assert result.updated_count == 0
        assert blob_store.writes == []


class TestStyleTags:
    def test_shared_words(self, engine):
        result = run(engine.get_playlists_with_tags())
        tags = {t.tag: t for t in result.tags}
        assert set(tags) == {"french", "touch", "house"}
        assert tags["house"].count == 2
        assert {p.path for p in tags["house"].playlists} == {
            "root/house-1/french-touch-2", "root/house-1/french-touch-3",
        }

    def test_write_tag(self, engine):
        paths = ["root/house-1/french-touch-2", "root/house-1/french-touch-3"]
        result = run(engine.write_style_tag_to_tracks(paths, "french house"))
        assert result.updated_count == 2
        rows = {r.track_key: r for r in run(engine.get_all_tracks())}
        assert rows[track_key("one.mp3")].comment == "4A - 128 [French House]"
        assert rows[track_key("two.mp3")].comment == "[House] [Deep] [French House]"

    def test_write_tag_idempotent(self, engine, blob_store):
        paths = ["root/house-1/french-touch-2"]
        run(engine.write_style_tag_to_tracks(paths, "French House"))
        writes = len(blob_store.writes)
        result = run(engine.write_style_tag_to_tracks(paths, "[french house]"))
        assert result.updated_count == 0
        assert len(blob_store.writes) == writes

    def test_write_tag_to_empty_comment(self, engine):
        run(engine.create_orphans_playlist("root"))
        run(engine.write_style_tag_to_tracks(["root/orphans-generated-1"], "ambient"))
        rows = {r.track_key: r for r in run(engine.get_all_tracks())}
        assert rows[track_key("four.mp3")].comment == "[Ambient]"

    def test_preview(self, engine):
        preview = run(engine.get_tag_count_preview(["root/house-1/french-touch-2", "root/house-1"], "deep"))
        assert preview.already_have_in_selection == 1
        assert preview.would_update == 1
        assert preview.total_in_collection == 1


class TestPersistence:
    def test_write_through(self, engine, blob_store, pointer_store):
        run(engine.rename_playlist("root/progressive-4", "Prog"))
        key, data, content_type = blob_store.writes[0]
        assert key == "collections/dj/collection.nml"
        assert content_type == "text/xml"
        assert pointer_store.records["dj"] == engine.location
        assert not engine.modified
        assert run(engine.get_document()) == data

    def test_written_document_reloads(self, engine, blob_store, make_engine):
        run(engine.move_playlist("root/progressive-4", "root/empty-5"))
        _, data, _ = blob_store.writes[-1]
        reloaded = make_engine(fetcher=FakeFetcher(data))
        names = child_names(reloaded, "root/empty-4")
        assert names == ["Progressive"]

    def test_failed_write_keeps_change(self, pointer_store):
        eng = CollectionEngine(
            "dj", LOCATION,
            persistence=PersistenceManager(FakeBlobStore(fail=True), pointer_store),
            fetcher=FakeFetcher(),
        )
        with pytest.raises(PersistenceError):
            run(eng.create_folder("root", "Techno"))
        assert eng.modified
        assert child_names(eng)[0] == "Techno"
        assert pointer_store.records == {}

    def test_transient_mutations_stay_in_memory(self, memory_engine):
        run(memory_engine.create_folder("root", "Techno"))
        assert memory_engine.modified
        document = run(memory_engine.get_document())
        assert document != SAMPLE_BYTES
        root = parse_document(document).playlists.find("NODE")
        assert root.find("SUBNODES").get("COUNT") == "5"
