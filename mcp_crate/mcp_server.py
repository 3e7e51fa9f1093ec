"""
FastMCP Server for the Crate collection manager

Exposes the playlist, track, comment and style-tag operations of one
collection as MCP tools, plus fuzzy comparison of track lists.

The collection is the one last stored for CRATE_OWNER_ID (default "local");
on first use with nothing stored yet, CRATE_COLLECTION_PATH points at the
Traktor collection.nml to start from. Every edit is written to the data
directory (CRATE_DATA_DIR), never back to the source file.

To connect to Claude Desktop (stdio), add to claude_desktop_config.json:
{
  "mcpServers": {
    "mcp-crate": {
      "command": "uv",
      "args": ["run", "--project", "/path/to/mcp-crate", "python", "-m", "mcp_crate.mcp_server"],
      "env": {"CRATE_COLLECTION_PATH": "/path/to/collection.nml"}
    }
  }
}

To run over HTTP (SSE):
  python -m mcp_crate.mcp_server --transport sse [--host 127.0.0.1] [--port 8000]
"""

import signal
import sys
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from loguru import logger

from .collection import CollectionEngine
from .config import Settings
from .matching import clean_search_query, compare_tracks as _compare_tracks
from .models import MoveRequest, NormalizedTrack, TrackFieldUpdates, TrackUpdate
from .persistence import JsonPointerStore, LocalBlobStore, PersistenceManager

# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------

mcp = FastMCP("MCP Crate")

settings: Optional[Settings] = None
engine: Optional[CollectionEngine] = None


async def _ensure_initialized() -> CollectionEngine:
    """Lazy-load the collection on first tool call."""
    global settings, engine
    if engine is not None:
        return engine

    settings = Settings.from_env()
    pointer_store = JsonPointerStore(settings.pointer_file)
    persistence = PersistenceManager(LocalBlobStore(settings.blob_dir), pointer_store)

    location = await pointer_store.get(settings.owner_id) or settings.collection_path
    if not location:
        raise ValueError("No collection stored yet. Set CRATE_COLLECTION_PATH to a collection.nml file.")

    logger.info(f"Initializing Crate MCP server for {settings.owner_id} from {location}")
    candidate = CollectionEngine(settings.owner_id, location, persistence=persistence)
    await candidate.load()
    if not candidate.is_loaded:
        raise ValueError(f"Collection could not be read from {location}")

    engine = candidate
    logger.info(f"MCP server ready with {engine.track_count} tracks")
    return engine


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------

@mcp.tool()
async def get_sidebar() -> Dict[str, Any]:
    """
    Show the folder and playlist tree of the collection.

    Returns:
        Collection stats plus the tree. Every node has a ``path`` (e.g.
        "root/house-1/deep-2") used by the other tools to address it.
        Paths change when the tree changes, so re-read after edits.
    """
    eng = await _ensure_initialized()
    return (await eng.get_sidebar()).model_dump()


@mcp.tool()
async def get_playlist_tracks(path: str) -> Dict[str, Any]:
    """
    List the tracks of a playlist.

    Args:
        path: Playlist path from get_sidebar

    Returns:
        Playlist name and rows with key, title, artist, album, bpm, rating.
    """
    eng = await _ensure_initialized()
    return (await eng.get_playlist_tracks(path)).model_dump()


@mcp.tool()
async def search_tracks(query: str, limit: int = 50) -> List[Dict[str, Any]]:
    """
    Find catalog tracks whose title, artist, album or comment contains the query.

    Args:
        query: Case-insensitive text to look for
        limit: Maximum rows to return (default 50, max 500)
    """
    eng = await _ensure_initialized()
    needle = query.lower()
    rows = []
    for row in await eng.get_all_tracks():
        haystack = " ".join((row.title, row.artist, row.album, row.comment)).lower()
        if needle in haystack:
            rows.append(row.model_dump())
            if len(rows) >= min(limit, 500):
                break
    return rows


# ---------------------------------------------------------------------------
# Playlists and folders
# ---------------------------------------------------------------------------

@mcp.tool()
async def create_folder(parent_path: str, name: str) -> Dict[str, Any]:
    """Create an empty folder at the top of a folder."""
    eng = await _ensure_initialized()
    return (await eng.create_folder(parent_path, name)).model_dump()


@mcp.tool()
async def create_playlist(folder_path: str, name: str) -> Dict[str, Any]:
    """Create an empty playlist at the top of a folder."""
    eng = await _ensure_initialized()
    return (await eng.create_playlist(folder_path, name)).model_dump()


@mcp.tool()
async def rename_playlist(path: str, name: str) -> Dict[str, Any]:
    eng = await _ensure_initialized()
    return (await eng.rename_playlist(path, name)).model_dump()


@mcp.tool()
async def move_playlists(moves: List[Dict[str, str]]) -> Dict[str, Any]:
    """
    Move playlists into folders.

    Args:
        moves: List of {"source_path": ..., "target_folder_path": ...}. All
            paths refer to the tree as it is before any of the moves.

    Returns:
        Per-move results and the number of playlists moved.
    """
    eng = await _ensure_initialized()
    requests = [MoveRequest(**move) for move in moves]
    return (await eng.move_playlist_batch(requests)).model_dump()


@mcp.tool()
async def duplicate_playlist(
    source_path: str,
    target_folder_path: str,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Copy a playlist's tracks into a new playlist.

    Args:
        source_path: Playlist to copy
        target_folder_path: Folder receiving the copy
        name: Name of the copy (default "<name> Copy")
    """
    eng = await _ensure_initialized()
    return (await eng.duplicate_playlist(source_path, target_folder_path, name)).model_dump()


@mcp.tool()
async def create_orphans_playlist(target_folder_path: str, name: Optional[str] = None) -> Dict[str, Any]:
    """
    Collect every track that is in no playlist into a new playlist.

    Args:
        target_folder_path: Folder receiving the playlist
        name: Playlist name (default "Orphans Generated")

    Returns:
        success=False when every track is already in some playlist.
    """
    eng = await _ensure_initialized()
    return (await eng.create_orphans_playlist(target_folder_path, name)).model_dump()


@mcp.tool()
async def delete_nodes(paths: List[str]) -> Dict[str, Any]:
    """Delete folders and playlists. Paths that don't resolve are skipped."""
    eng = await _ensure_initialized()
    return (await eng.delete_nodes(paths)).model_dump()


# ---------------------------------------------------------------------------
# Tracks and comments
# ---------------------------------------------------------------------------

@mcp.tool()
async def update_tracks(updates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Edit track metadata.

    Args:
        updates: List of {"key": <track key>, "updates": {field: value}}.
            Fields: title, artist, album, comment, genre, label, rating, key, bpm.
            An empty value clears the field.

    Returns:
        Updated count and per-track errors for unknown keys.
    """
    eng = await _ensure_initialized()
    batch = [
        TrackUpdate(key=u["key"], updates=TrackFieldUpdates(**u.get("updates", {})))
        for u in updates
    ]
    return (await eng.update_tracks_batch(batch)).model_dump()


@mcp.tool()
async def get_unique_comments() -> Dict[str, Any]:
    """
    Group the distinct track comments by kind.

    Returns:
        Buckets key_bpm, genre, url, hex, combination (several kinds) and other.
    """
    eng = await _ensure_initialized()
    return (await eng.get_unique_comments()).model_dump()


@mcp.tool()
async def replace_comments(old_comments: List[str], new_comment: str = "") -> Dict[str, Any]:
    """
    Replace every comment exactly equal to one of ``old_comments``.

    Args:
        old_comments: Comments to replace, as returned by get_unique_comments
        new_comment: Replacement text; empty clears the comment
    """
    eng = await _ensure_initialized()
    return (await eng.update_comments_batch(old_comments, new_comment)).model_dump()


# ---------------------------------------------------------------------------
# Style tags
# ---------------------------------------------------------------------------

@mcp.tool()
async def get_playlists_with_tags() -> Dict[str, Any]:
    """Style words shared by two or more playlists (from playlist and folder names)."""
    eng = await _ensure_initialized()
    return (await eng.get_playlists_with_tags()).model_dump()


@mcp.tool()
async def preview_style_tag(playlist_paths: List[str], tag: str) -> Dict[str, Any]:
    eng = await _ensure_initialized()
    return (await eng.get_tag_count_preview(playlist_paths, tag)).model_dump()


@mcp.tool()
async def write_style_tag(playlist_paths: List[str], tag: str) -> Dict[str, Any]:
    """
    Append "[Tag]" to the comment of every track in the given playlists.

    Tracks whose comment already contains the tag are left alone.
    """
    eng = await _ensure_initialized()
    return (await eng.write_style_tag_to_tracks(playlist_paths, tag)).model_dump()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _match_threshold(threshold: Optional[int]) -> int:
    """Explicit threshold, else the configured CRATE_MATCH_THRESHOLD."""
    if threshold is not None:
        return threshold
    return (settings or Settings.from_env()).match_threshold


@mcp.tool()
async def compare_tracks(
    source: List[Dict[str, Any]],
    target: List[Dict[str, Any]],
    threshold: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Fuzzy-match two track lists by artist and title.

    Args:
        source: Tracks to look for, each {"id", "artist", "title", "album"?}
        target: Tracks to look in, same shape
        threshold: Minimum confidence (0-100) for a match (default CRATE_MATCH_THRESHOLD, 70)

    Returns:
        Matched pairs with confidence, tracks missing on either side, stats.
    """
    result = _compare_tracks(
        [NormalizedTrack(**t) for t in source],
        [NormalizedTrack(**t) for t in target],
        _match_threshold(threshold),
    )
    return result.model_dump()


@mcp.tool()
async def compare_playlist_with_tracks(
    path: str,
    target: List[Dict[str, Any]],
    threshold: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Compare a collection playlist against an external track list.

    Args:
        path: Playlist path from get_sidebar
        target: External tracks, each {"id", "artist", "title"}
        threshold: Minimum confidence (0-100) for a match (default CRATE_MATCH_THRESHOLD, 70)
    """
    eng = await _ensure_initialized()
    playlist = await eng.get_playlist_tracks(path)
    source = [
        NormalizedTrack(id=row.key, artist=row.artist or "", title=row.title, album=row.album)
        for row in playlist.tracks
    ]
    return _compare_tracks(source, [NormalizedTrack(**t) for t in target], _match_threshold(threshold)).model_dump()


@mcp.tool()
async def clean_search(query: str) -> str:
    """Strip features, bracketed versions and punctuation from a track string for store search."""
    return clean_search_query(query)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    import argparse

    def handle_shutdown(sig, frame):
        logger.info("Shutting down MCP server...")
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    parser = argparse.ArgumentParser()
    parser.add_argument("--transport", default="stdio", choices=["stdio", "sse"])
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    logger.info("Starting MCP Crate server...")

    if args.transport == "sse":
        mcp.run(transport="sse", host=args.host, port=args.port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
