"""
Data Models for the Crate collection manager

Node tree shapes for the Traktor playlist hierarchy, the row types handed to
callers, and the track descriptors used by the matching engine.

Tree nodes are frozen: every structural edit builds a new root (see tree.py),
so any index derived from an older root can never be mistaken for current.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


NodeKind = Literal["FOLDER", "PLAYLIST", "SMARTLIST"]


# ---------------------------------------------------------------------------
# Node tree
# ---------------------------------------------------------------------------

class PlaylistEntry(BaseModel):
    """Reference from a playlist into the catalog, by track key."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Catalog key (volume + dir + file)")
    key_type: str = Field("TRACK", description="PRIMARYKEY TYPE attribute")
    extra_xml: Tuple[str, ...] = Field((), description="Raw XML of extra entry children")


class PlaylistNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["PLAYLIST"] = "PLAYLIST"
    node_id: int = Field(..., description="Internal id, stable for the engine's lifetime")
    name: Optional[str] = None
    uuid: str = Field(..., description="32 hex character playlist identifier")
    list_type: str = "LIST"
    entries: Tuple[PlaylistEntry, ...] = ()

    def entry_keys(self) -> List[str]:
        return [entry.key for entry in self.entries if entry.key]


class SmartListNode(BaseModel):
    """Saved search. Kept opaque and written back exactly as it was read."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["SMARTLIST"] = "SMARTLIST"
    node_id: int
    name: Optional[str] = None
    raw_xml: str = Field("", description="Serialized SMARTLIST element")


class FolderNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["FOLDER"] = "FOLDER"
    node_id: int
    name: Optional[str] = None
    children: Tuple["Node", ...] = ()
    count: int = Field(0, ge=0, description="Cached child count (SUBNODES COUNT)")

    @model_validator(mode="before")
    @classmethod
    def _default_count(cls, data: Any) -> Any:
        if isinstance(data, dict) and "count" not in data:
            data = dict(data)
            data["count"] = len(data.get("children") or ())
        return data

    @model_validator(mode="after")
    def _check_count(self) -> "FolderNode":
        if self.count != len(self.children):
            raise ValueError(
                f"Folder count {self.count} does not match {len(self.children)} children"
            )
        return self

    def with_children(self, children) -> "FolderNode":
        """Return a copy holding ``children`` with the cached count in step."""
        children = tuple(children)
        return self.model_copy(update={"children": children, "count": len(children)})


Node = Annotated[
    Union[FolderNode, PlaylistNode, SmartListNode],
    Field(discriminator="kind"),
]

FolderNode.model_rebuild()


class NodeReference(BaseModel):
    """Where a node was found during the last index build. A view, not an owner."""

    model_config = ConfigDict(frozen=True)

    path: str
    node_type: NodeKind
    node_id: int
    node: Node
    parent_path: Optional[str] = None
    parent_id: Optional[int] = None
    depth: int = 0
    position: int = 0


# ---------------------------------------------------------------------------
# Sidebar projection
# ---------------------------------------------------------------------------

class SidebarTreeNode(BaseModel):
    name: str
    type: NodeKind
    path: str
    parent_path: Optional[str] = None
    depth: int = 0
    playlist_size: Optional[int] = Field(None, description="Entries in this playlist")
    playlist_count: Optional[int] = Field(None, description="Playlists below this folder")
    entry_count: Optional[int] = Field(None, description="Playlist entries below this folder")
    children: List["SidebarTreeNode"] = Field(default_factory=list)


SidebarTreeNode.model_rebuild()


class SidebarStats(BaseModel):
    playlist_count: int = 0
    track_count: int = 0


class Sidebar(BaseModel):
    stats: SidebarStats
    tree: Optional[SidebarTreeNode] = None


# ---------------------------------------------------------------------------
# Track rows
# ---------------------------------------------------------------------------

class PlaylistTrackRow(BaseModel):
    key: str
    title: str
    artist: Optional[str] = None
    album: Optional[str] = None
    bpm: Optional[float] = None
    rating: Optional[int] = None


class PlaylistTracks(BaseModel):
    playlist_name: str
    tracks: List[PlaylistTrackRow] = Field(default_factory=list)


class FullTrackRow(BaseModel):
    """Every editable and informational field of one catalog entry."""

    track_key: str = Field(..., description="Unique identifier for the track (volume+dir+file)")
    title: str = ""
    artist: str = ""
    album: str = ""
    album_track: str = ""
    bpm: Optional[float] = None
    bpm_quality: str = ""
    rating: str = ""
    comment: str = ""
    genre: str = ""
    label: str = ""
    musical_key: str = ""
    playcount: str = ""
    playtime: str = ""
    import_date: str = ""
    last_played: str = ""
    release_date: str = ""
    bitrate: str = ""
    filesize: str = ""
    filepath: str = ""


class TrackFieldUpdates(BaseModel):
    """
    Partial update for a catalog entry.

    Only fields that were explicitly provided are applied; an empty or null
    value clears the attribute.
    """

    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    comment: Optional[str] = None
    genre: Optional[str] = None
    label: Optional[str] = None
    rating: Optional[str] = None
    key: Optional[str] = None
    bpm: Optional[float] = None

    def provided(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class TrackUpdate(BaseModel):
    key: str
    updates: TrackFieldUpdates


# ---------------------------------------------------------------------------
# Comment categories
# ---------------------------------------------------------------------------

class CombinationComment(BaseModel):
    comment: str
    categories: List[str]


class CategorizedComments(BaseModel):
    key_bpm: List[str] = Field(default_factory=list)
    genre: List[str] = Field(default_factory=list)
    url: List[str] = Field(default_factory=list)
    hex: List[str] = Field(default_factory=list)
    combination: List[CombinationComment] = Field(default_factory=list)
    other: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class OperationResult(BaseModel):
    success: bool = True


class EntriesResult(BaseModel):
    success: bool = True
    created_entries: int = 0


class MoveRequest(BaseModel):
    source_path: str = Field(..., min_length=1)
    target_folder_path: str = Field(..., min_length=1)


class MoveResult(BaseModel):
    source_path: str
    success: bool
    error: Optional[str] = None


class BatchMoveResult(BaseModel):
    results: List[MoveResult] = Field(default_factory=list)
    moved_count: int = 0


class DeleteResult(BaseModel):
    success: bool = True
    deleted_count: int = 0
    skipped: List[str] = Field(default_factory=list)


class TrackUpdateError(BaseModel):
    key: str
    error: str


class BatchTrackUpdateResult(BaseModel):
    success: bool
    updated_count: int = 0
    errors: List[TrackUpdateError] = Field(default_factory=list)


class CommentUpdateResult(BaseModel):
    success: bool = True
    updated_count: int = 0


class PlaylistTagInfo(BaseModel):
    path: str
    name: str


class TagWithPlaylists(BaseModel):
    tag: str
    count: int
    playlists: List[PlaylistTagInfo]


class ExtractedTags(BaseModel):
    tags: List[TagWithPlaylists] = Field(default_factory=list)


class StyleTagResult(BaseModel):
    updated_count: int = 0


class TagCountPreview(BaseModel):
    would_update: int = 0
    already_have_in_selection: int = 0
    total_in_collection: int = 0


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class NormalizedTrack(BaseModel):
    """Track descriptor from any catalog (collection, streaming server, release list)."""

    id: str = Field(..., description="Identifier unique within its own catalog")
    artist: str = ""
    title: str = ""
    album: Optional[str] = None
    original_artist: str = Field("", description="Artist as the catalog spelled it")
    original_title: str = Field("", description="Title as the catalog spelled it")

    @model_validator(mode="before")
    @classmethod
    def _default_originals(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("original_artist"):
                data["original_artist"] = data.get("artist") or ""
            if not data.get("original_title"):
                data["original_title"] = data.get("title") or ""
        return data


class MatchResult(BaseModel):
    source_track: NormalizedTrack
    target_track: Optional[NormalizedTrack] = None
    confidence: int = Field(0, ge=0, le=100)
    match_type: Literal["exact", "fuzzy", "none"] = "none"


class ComparisonStats(BaseModel):
    total_source: int = 0
    total_target: int = 0
    matched_count: int = 0
    missing_from_target_count: int = 0
    missing_from_source_count: int = 0


class ComparisonResult(BaseModel):
    matched: List[MatchResult] = Field(default_factory=list)
    missing_from_target: List[NormalizedTrack] = Field(default_factory=list)
    missing_from_source: List[NormalizedTrack] = Field(default_factory=list)
    stats: ComparisonStats = Field(default_factory=ComparisonStats)
