"""
Collection Engine

Holds one owner's parsed collection: the node tree, the track index, and the
persistence state. All playlist and track operations live here.

Structural edits are copy-on-write: each one computes a new root from the
current one by ``node_id`` and only then swaps it in, so a failed edit leaves
the tree untouched and the cached path index (keyed on the root's identity)
is rebuilt on the next read. Mutations are serialized per engine by an
``asyncio.Lock``.
"""

import asyncio
import itertools
import re
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from .comments import categorize_comments
from .errors import (
    CollectionError,
    CollectionNotLoadedError,
    SessionExpiredError,
    TrackNotFoundError,
    TypeMismatchError,
    UpstreamUnavailableError,
)
from .models import (
    BatchMoveResult,
    BatchTrackUpdateResult,
    CategorizedComments,
    CommentUpdateResult,
    DeleteResult,
    EntriesResult,
    ExtractedTags,
    FolderNode,
    FullTrackRow,
    MoveRequest,
    MoveResult,
    NodeReference,
    OperationResult,
    PlaylistEntry,
    PlaylistNode,
    PlaylistTagInfo,
    PlaylistTrackRow,
    PlaylistTracks,
    Sidebar,
    SidebarStats,
    StyleTagResult,
    TagCountPreview,
    TagWithPlaylists,
    TrackFieldUpdates,
    TrackUpdate,
    TrackUpdateError,
)
from .nml import (
    ROOT_NAMES,
    NmlDocument,
    TrackEntry,
    new_playlist_uuid,
    parse_document,
    parse_node_tree,
    serialize_document,
)
from .persistence import PersistenceManager, PersistenceMode, fetch_document
from .tree import (
    PathIndex,
    collect_playlist_keys,
    insert_child,
    move_node,
    remove_node,
    replace_node,
)

Fetcher = Callable[[str], Awaitable[bytes]]

DEFAULT_ORPHANS_NAME = "Orphans Generated"

# Words too generic to be a style tag
TAG_STOP_WORDS = {
    "the", "a", "an", "and", "or", "of", "to", "in", "for", "on", "at", "by",
    "with", "from", "up", "down", "out", "off", "over", "under", "again",
    "new", "old", "best", "top", "all", "my", "your", "our", "their", "his", "her",
    "mix", "set", "dj", "playlist", "tracks", "songs", "music", "vol", "volume",
    "pt", "part", "ep", "lp", "radio", "show", "session", "sessions",
}
_TAG_SPLIT = re.compile(r"[\s\-_/\\|,;:()\[\]{}]+")
_WORD_START = re.compile(r"\b\w")


def _to_rating(value: str) -> Optional[int]:
    try:
        return int(float(value)) or None
    except ValueError:
        return None


def _to_bpm(value: str) -> Optional[float]:
    try:
        return float(value) or None
    except ValueError:
        return None


def _title_case(value: str) -> str:
    return _WORD_START.sub(lambda m: m.group().upper(), value)


def _bracket_tag(tag: str) -> str:
    """``"deep house"`` -> ``"[Deep House]"``."""
    if tag.startswith("["):
        tag = tag[1:-1]
    return f"[{_title_case(tag)}]"


class CollectionEngine:
    """One owner's collection document and every operation on it."""

    def __init__(
        self,
        owner_id: str,
        location: str,
        persistence: Optional[PersistenceManager] = None,
        fetcher: Fetcher = fetch_document,
    ) -> None:
        self.owner_id = owner_id
        self.location = location
        self.mode = PersistenceMode.for_location(location)
        if self.mode is PersistenceMode.DURABLE and persistence is None:
            raise ValueError("Durable collections need a PersistenceManager")
        self.persistence = persistence
        self._fetcher = fetcher

        self._ids = itertools.count(1)
        self._document: Optional[NmlDocument] = None
        self._root: Optional[FolderNode] = None
        self._original: Optional[bytes] = None
        self._modified = False
        self._tracks: Dict[str, TrackEntry] = {}
        self._index: Optional[PathIndex] = None
        self._loading: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._document is not None

    @property
    def root(self) -> Optional[FolderNode]:
        return self._root

    @property
    def track_count(self) -> int:
        return len(self._tracks)

    @property
    def modified(self) -> bool:
        return self._modified

    def _next_id(self) -> int:
        return next(self._ids)

    async def load(self) -> None:
        """Fetch and parse the document once; concurrent callers share the same load."""
        if self._document is not None:
            return
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._read_document())
            self._loading.add_done_callback(self._clear_loading)
        # a cancelled caller must not cancel the load for the others
        await asyncio.shield(self._loading)

    def _clear_loading(self, future: asyncio.Future) -> None:
        if self._loading is future:
            self._loading = None

    async def _read_document(self) -> None:
        if self.mode is PersistenceMode.TRANSIENT:
            # in-memory collections only come from an upload
            raise SessionExpiredError(self.owner_id)
        try:
            data = await self._fetcher(self.location)
        except UpstreamUnavailableError as e:
            logger.warning(f"Collection for {self.owner_id} unavailable: {e}")
            return
        self.load_from_bytes(data)

    def load_from_bytes(self, data: bytes) -> None:
        """Parse ``data`` and replace whatever was loaded before."""
        document = parse_document(data)
        root = parse_node_tree(document.playlists, self._next_id)

        tracks: Dict[str, TrackEntry] = {}
        duplicates = 0
        for entry in document.entries():
            key = entry.key
            if not key:
                continue
            if key in tracks:
                duplicates += 1
            tracks[key] = entry

        self._document = document
        self._root = root
        self._tracks = tracks
        self._original = data if isinstance(data, bytes) else data.encode("utf-8")
        self._modified = False
        self._index = None

        if duplicates:
            logger.warning(f"{duplicates} duplicate catalog keys for {self.owner_id}, last entry wins")
        logger.info(f"Loaded collection for {self.owner_id}: {len(tracks)} tracks")

    async def _ensure_loaded(self) -> None:
        await self.load()
        if self._document is None:
            raise CollectionNotLoadedError()

    def _path_index(self) -> PathIndex:
        if self._index is None or self._index.root is not self._root:
            self._index = PathIndex(self._root)
        return self._index

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        self._modified = True
        if self.mode is PersistenceMode.TRANSIENT:
            self._original = None
            return

        output = serialize_document(self._document, self._root)
        self.location = await self.persistence.write(self.owner_id, output)
        self._original = output
        self._modified = False

    async def get_document(self) -> bytes:
        """Current document contents; the uploaded bytes if nothing changed."""
        await self._ensure_loaded()
        if not self._modified and self._original is not None:
            return self._original
        return serialize_document(self._document, self._root)

    # ------------------------------------------------------------------
    # Node lookup
    # ------------------------------------------------------------------

    def _folder_ref(self, index: PathIndex, path: str) -> NodeReference:
        ref = index.get(path)
        if ref.node_type != "FOLDER":
            raise TypeMismatchError("Target node is not a folder")
        return ref

    def _playlist_ref(self, index: PathIndex, path: str, message: str) -> NodeReference:
        ref = index.get(path)
        if ref.node_type != "PLAYLIST":
            raise TypeMismatchError(message)
        return ref

    def _new_playlist(self, name: str, entries: Iterable[PlaylistEntry]) -> PlaylistNode:
        return PlaylistNode(
            node_id=self._next_id(),
            name=name,
            uuid=new_playlist_uuid(),
            entries=tuple(entries),
        )

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_sidebar(self) -> Sidebar:
        await self.load()
        if self._root is None:
            return Sidebar(stats=SidebarStats())
        index = self._path_index()
        return Sidebar(
            stats=SidebarStats(playlist_count=index.playlist_count, track_count=len(self._tracks)),
            tree=index.tree,
        )

    def _track_row(self, key: str) -> PlaylistTrackRow:
        entry = self._tracks.get(key)
        if entry is None:
            return PlaylistTrackRow(key=key, title="Missing Track")
        return PlaylistTrackRow(
            key=key,
            title=entry.get("title") or "Untitled",
            artist=entry.get("artist") or None,
            album=entry.get("album") or None,
            bpm=_to_bpm(entry.get("bpm")),
            rating=_to_rating(entry.get("rating")),
        )

    async def get_playlist_tracks(self, path: str) -> PlaylistTracks:
        await self._ensure_loaded()
        ref = self._playlist_ref(self._path_index(), path, "Selected node is not a playlist")
        return PlaylistTracks(
            playlist_name=ref.node.name or "Untitled",
            tracks=[self._track_row(key) for key in ref.node.entry_keys()],
        )

    async def get_all_tracks(self) -> List[FullTrackRow]:
        await self._ensure_loaded()
        return [entry.to_full_row(key) for key, entry in self._tracks.items()]

    async def get_unique_comments(self) -> CategorizedComments:
        await self._ensure_loaded()
        comments = {entry.comment for entry in self._tracks.values() if entry.comment.strip()}
        return categorize_comments(comments)

    # ------------------------------------------------------------------
    # Tree mutations
    # ------------------------------------------------------------------

    async def create_folder(self, parent_path: str, name: str) -> OperationResult:
        await self._ensure_loaded()
        async with self._lock:
            parent = self._folder_ref(self._path_index(), parent_path)
            folder = FolderNode(node_id=self._next_id(), name=name)
            self._root = insert_child(self._root, parent.node_id, folder)
            await self._persist()
        logger.info(f"Created folder '{name}' in {parent_path}")
        return OperationResult()

    async def create_playlist(self, folder_path: str, name: str) -> OperationResult:
        await self._ensure_loaded()
        async with self._lock:
            folder = self._folder_ref(self._path_index(), folder_path)
            self._root = insert_child(self._root, folder.node_id, self._new_playlist(name, ()))
            await self._persist()
        logger.info(f"Created playlist '{name}' in {folder_path}")
        return OperationResult()

    async def rename_playlist(self, path: str, name: str) -> OperationResult:
        await self._ensure_loaded()
        async with self._lock:
            ref = self._playlist_ref(self._path_index(), path, "Only playlists can be renamed")
            renamed = ref.node.model_copy(update={"name": name})
            self._root = replace_node(self._root, ref.node_id, renamed)
            await self._persist()
        return OperationResult()

    def _moved_root(self, index: PathIndex, root: FolderNode, move: MoveRequest) -> FolderNode:
        source = self._playlist_ref(index, move.source_path, "Only playlists can be moved")
        target = self._folder_ref(index, move.target_folder_path)
        return move_node(root, source.node_id, target.node_id)

    async def move_playlist(self, source_path: str, target_folder_path: str) -> OperationResult:
        await self._ensure_loaded()
        move = MoveRequest(source_path=source_path, target_folder_path=target_folder_path)
        async with self._lock:
            self._root = self._moved_root(self._path_index(), self._root, move)
            await self._persist()
        logger.info(f"Moved {source_path} to {target_folder_path}")
        return OperationResult()

    async def move_playlist_batch(self, moves: List[MoveRequest]) -> BatchMoveResult:
        """
        Apply moves in order, each independently.

        Paths refer to the tree as it was when the batch started; a failed
        move is reported and the rest carry on. One write at the end.
        """
        await self._ensure_loaded()
        result = BatchMoveResult()
        async with self._lock:
            index = self._path_index()
            root = self._root
            for move in moves:
                try:
                    root = self._moved_root(index, root, move)
                except CollectionError as e:
                    logger.warning(f"Move of {move.source_path} failed: {e}")
                    result.results.append(MoveResult(source_path=move.source_path, success=False, error=str(e)))
                    continue
                result.results.append(MoveResult(source_path=move.source_path, success=True))
                result.moved_count += 1

            if result.moved_count:
                self._root = root
                await self._persist()
        return result

    async def duplicate_playlist(
        self, source_path: str, target_folder_path: str, name: Optional[str] = None
    ) -> EntriesResult:
        await self._ensure_loaded()
        async with self._lock:
            index = self._path_index()
            source = self._playlist_ref(index, source_path, "Source must be a playlist")
            target = self._folder_ref(index, target_folder_path)
            # frozen entries, shared with the source
            entries = source.node.entries
            playlist_name = (name or "").strip() or f"{source.node.name or 'Playlist'} Copy"
            self._root = insert_child(self._root, target.node_id, self._new_playlist(playlist_name, entries))
            await self._persist()
        return EntriesResult(created_entries=len(entries))

    async def create_orphans_playlist(
        self, target_folder_path: str, name: Optional[str] = None
    ) -> EntriesResult:
        """Gather every catalog track no playlist references into a new playlist."""
        await self._ensure_loaded()
        async with self._lock:
            target = self._folder_ref(self._path_index(), target_folder_path)
            referenced = collect_playlist_keys(self._root)
            orphans = [key for key in self._tracks if key not in referenced]
            if not orphans:
                logger.info("No orphan tracks found")
                return EntriesResult(success=False, created_entries=0)

            playlist_name = (name or "").strip() or DEFAULT_ORPHANS_NAME
            self._root = insert_child(self._root, target.node_id, self._new_playlist(
                playlist_name, [PlaylistEntry(key=key) for key in orphans],
            ))
            await self._persist()
        logger.info(f"Created '{playlist_name}' with {len(orphans)} orphan tracks")
        return EntriesResult(created_entries=len(orphans))

    async def delete_nodes(self, paths: List[str]) -> DeleteResult:
        """Best-effort delete; paths that don't resolve (or the root) are skipped."""
        await self._ensure_loaded()
        result = DeleteResult()
        async with self._lock:
            index = self._path_index()
            root = self._root
            for path in paths:
                if path not in index:
                    logger.warning(f"Skipping delete of unknown path: {path}")
                    result.skipped.append(path)
                    continue
                try:
                    root, _ = remove_node(root, index.get(path).node_id)
                except CollectionError as e:
                    # root folder, or already gone with a deleted ancestor
                    logger.warning(f"Skipping delete of {path}: {e}")
                    result.skipped.append(path)
                    continue
                result.deleted_count += 1

            if result.deleted_count:
                self._root = root
                await self._persist()
        logger.info(f"Deleted {result.deleted_count} nodes, skipped {len(result.skipped)}")
        return result

    # ------------------------------------------------------------------
    # Track mutations
    # ------------------------------------------------------------------

    async def update_track(self, key: str, updates: TrackFieldUpdates) -> OperationResult:
        await self._ensure_loaded()
        async with self._lock:
            entry = self._tracks.get(key)
            if entry is None:
                raise TrackNotFoundError(key)
            entry.apply_updates(updates)
            await self._persist()
        return OperationResult()

    async def update_tracks_batch(self, updates: List[TrackUpdate]) -> BatchTrackUpdateResult:
        await self._ensure_loaded()
        errors: List[TrackUpdateError] = []
        updated = 0
        async with self._lock:
            for update in updates:
                entry = self._tracks.get(update.key)
                if entry is None:
                    errors.append(TrackUpdateError(key=update.key, error="Track not found"))
                    continue
                entry.apply_updates(update.updates)
                updated += 1
            if updated:
                await self._persist()
        return BatchTrackUpdateResult(success=not errors, updated_count=updated, errors=errors)

    async def update_comments_batch(self, old_comments: List[str], new_comment: str) -> CommentUpdateResult:
        """Replace every comment exactly equal to one of ``old_comments``; empty clears."""
        await self._ensure_loaded()
        old = set(old_comments)
        updated = 0
        async with self._lock:
            for entry in self._tracks.values():
                current = entry.comment
                if current and current in old:
                    entry.comment = new_comment or None
                    updated += 1
            if updated:
                await self._persist()
        logger.info(f"Updated {updated} comments")
        return CommentUpdateResult(updated_count=updated)

    # ------------------------------------------------------------------
    # Style tags
    # ------------------------------------------------------------------

    def _names_up_to_root(self, index: PathIndex, path: str) -> List[str]:
        names = []
        for ref in index.lineage(path):
            name = ref.node.name
            if name and name not in ROOT_NAMES:
                names.append(name)
        return names

    async def get_playlists_with_tags(self) -> ExtractedTags:
        """
        Words shared by two or more playlists, from their own and their folders' names.

        A playlist "Deep" inside a "House" folder carries both "deep" and
        "house". Sorted by the number of playlists, most first.
        """
        await self._ensure_loaded()
        index = self._path_index()
        word_playlists: Dict[str, List[PlaylistTagInfo]] = {}

        for ref in index.playlists():
            info = PlaylistTagInfo(path=ref.path, name=ref.node.name or "Untitled")
            words: Set[str] = set()
            for name in self._names_up_to_root(index, ref.path):
                for word in _TAG_SPLIT.split(name.lower()):
                    word = word.strip()
                    if len(word) >= 2 and word not in TAG_STOP_WORDS and not word.isdigit():
                        words.add(word)
            for word in sorted(words):
                word_playlists.setdefault(word, []).append(info)

        tags = [
            TagWithPlaylists(tag=word, count=len(playlists), playlists=playlists)
            for word, playlists in word_playlists.items()
            if len(playlists) >= 2
        ]
        tags.sort(key=lambda t: t.count, reverse=True)
        return ExtractedTags(tags=tags)

    def _selection_keys(self, index: PathIndex, playlist_paths: List[str]) -> List[str]:
        keys: Dict[str, None] = {}
        for path in playlist_paths:
            ref = index.references.get(path)
            if ref is None or ref.node_type != "PLAYLIST":
                continue
            for key in ref.node.entry_keys():
                keys[key] = None
        return list(keys)

    async def write_style_tag_to_tracks(self, playlist_paths: List[str], tag: str) -> StyleTagResult:
        """Append ``[Tag]`` to the comment of each selected track that lacks it."""
        await self._ensure_loaded()
        bracket_tag = _bracket_tag(tag)
        needle = bracket_tag.lower()
        updated = 0
        async with self._lock:
            for key in self._selection_keys(self._path_index(), playlist_paths):
                entry = self._tracks.get(key)
                if entry is None:
                    continue
                current = entry.comment
                if needle in current.lower():
                    continue
                entry.comment = f"{current} {bracket_tag}" if current else bracket_tag
                updated += 1
            if updated:
                await self._persist()
        logger.info(f"Tagged {updated} tracks with {bracket_tag}")
        return StyleTagResult(updated_count=updated)

    async def get_tag_count_preview(self, playlist_paths: List[str], tag: str) -> TagCountPreview:
        await self._ensure_loaded()
        needle = (tag if tag.startswith("[") else f"[{tag}]").lower()
        preview = TagCountPreview()

        for key in self._selection_keys(self._path_index(), playlist_paths):
            entry = self._tracks.get(key)
            if entry is None:
                continue
            if needle in entry.comment.lower():
                preview.already_have_in_selection += 1
            else:
                preview.would_update += 1

        preview.total_in_collection = sum(
            1 for entry in self._tracks.values() if needle in entry.comment.lower()
        )
        return preview
