"""
FastAPI Web Application for the Crate collection manager

Endpoints (all collection routes are under /api/users/{owner_id}/collection):
  POST /upload                    - Store a collection file (durable)
  POST /upload/memory             - Keep a collection file in memory only
  GET  /sidebar                   - Folder/playlist tree with counts
  GET  /document                  - Download the current collection file
  GET  /playlists/tracks?path=    - Tracks of one playlist
  POST /folders                   - Create a folder
  POST /playlists                 - Create a playlist
  POST /playlists/rename          - Rename a playlist
  POST /playlists/move            - Move a playlist into a folder
  POST /playlists/move-batch      - Move several playlists, one write
  POST /playlists/duplicate       - Copy a playlist
  POST /playlists/orphans         - Playlist of tracks no playlist references
  POST /nodes/delete              - Delete folders/playlists
  GET  /tracks                    - Every catalog track
  POST /tracks/update             - Edit one track
  POST /tracks/update-batch       - Edit many tracks
  GET  /comments                  - Distinct comments by category
  POST /comments/update-batch     - Replace comments in bulk
  GET  /tags                      - Style tags shared by playlists
  POST /tags/preview              - How many tracks a style tag would touch
  POST /tags/write                - Append a style tag to track comments

  POST /api/compare               - Fuzzy-compare two track lists
  GET  /api/search/clean?q=       - Clean up a track string for store search
"""

import uvicorn
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from loguru import logger

from .collection import CollectionEngine
from .config import Settings
from .errors import CollectionError
from .instances import InstanceManager
from .matching import clean_search_query, compare_tracks
from .models import (
    MoveRequest,
    NormalizedTrack,
    TrackFieldUpdates,
    TrackUpdate,
)
from .nml import parse_document
from .persistence import (
    JsonPointerStore,
    LocalBlobStore,
    PersistenceManager,
    memory_location,
)

MAX_UPLOAD_BYTES = 50 * 1024 * 1024

# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

settings = Settings.from_env()
blob_store = LocalBlobStore(settings.blob_dir)
pointer_store = JsonPointerStore(settings.pointer_file)
persistence = PersistenceManager(blob_store, pointer_store)


def _engine_factory(owner_id: str, location: str) -> CollectionEngine:
    return CollectionEngine(owner_id, location, persistence=persistence)


manager = InstanceManager(
    _engine_factory,
    max_instances=settings.max_instances,
    ttl_seconds=settings.instance_ttl,
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    manager.start_sweeper(settings.sweep_interval)
    logger.info(f"Crate ready. Data directory: {settings.data_dir}")

    yield

    await manager.stop_sweeper()


app = FastAPI(title="Crate Collection Manager", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CollectionError)
async def collection_error_handler(request: Request, exc: CollectionError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def _engine(owner_id: str) -> CollectionEngine:
    engine = manager.get(owner_id)
    if engine is not None:
        return engine
    location = await pointer_store.get(owner_id)
    if location is None:
        raise HTTPException(status_code=404, detail="No collection uploaded")
    return await manager.acquire(owner_id, location)


async def _read_upload(request: Request) -> bytes:
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(body) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Collection file too large")
    # reject anything that isn't a collection before storing it
    parse_document(body)
    return body


# ---------------------------------------------------------------------------
# Upload / download
# ---------------------------------------------------------------------------

@app.post("/api/users/{owner_id}/collection/upload")
async def upload_collection(owner_id: str, request: Request):
    """Store a collection file durably; the next request loads it."""
    body = await _read_upload(request)
    location = await persistence.write(owner_id, body)
    manager.invalidate(owner_id)
    return {"success": True, "location": location}


@app.post("/api/users/{owner_id}/collection/upload/memory")
async def upload_collection_to_memory(owner_id: str, request: Request):
    """Keep a collection in memory only. Lost on eviction or restart."""
    body = await _read_upload(request)
    engine = await manager.set_from_memory(owner_id, body)
    await pointer_store.update(owner_id, memory_location(owner_id))
    return {"success": True, "track_count": engine.track_count}


@app.get("/api/users/{owner_id}/collection/document")
async def download_collection(owner_id: str):
    engine = await _engine(owner_id)
    data = await engine.get_document()
    return Response(
        content=data,
        media_type="application/xml",
        headers={"Content-Disposition": 'attachment; filename="collection.nml"'},
    )


# ---------------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------------

class CreateFolderRequest(BaseModel):
    parent_path: str
    name: str = Field(..., min_length=1)


class CreatePlaylistRequest(BaseModel):
    folder_path: str
    name: str = Field(..., min_length=1)


class RenameRequest(BaseModel):
    path: str
    name: str = Field(..., min_length=1)


class MoveBatchRequest(BaseModel):
    moves: List[MoveRequest]


class DuplicateRequest(BaseModel):
    source_path: str
    target_folder_path: str
    name: Optional[str] = None


class OrphansRequest(BaseModel):
    target_folder_path: str
    name: Optional[str] = None


class DeleteRequest(BaseModel):
    paths: List[str]


@app.get("/api/users/{owner_id}/collection/sidebar")
async def sidebar(owner_id: str):
    engine = await _engine(owner_id)
    return (await engine.get_sidebar()).model_dump()


@app.get("/api/users/{owner_id}/collection/playlists/tracks")
async def playlist_tracks(owner_id: str, path: str):
    engine = await _engine(owner_id)
    return (await engine.get_playlist_tracks(path)).model_dump()


@app.post("/api/users/{owner_id}/collection/folders")
async def create_folder(owner_id: str, body: CreateFolderRequest):
    engine = await _engine(owner_id)
    return (await engine.create_folder(body.parent_path, body.name)).model_dump()


@app.post("/api/users/{owner_id}/collection/playlists")
async def create_playlist(owner_id: str, body: CreatePlaylistRequest):
    engine = await _engine(owner_id)
    return (await engine.create_playlist(body.folder_path, body.name)).model_dump()


@app.post("/api/users/{owner_id}/collection/playlists/rename")
async def rename_playlist(owner_id: str, body: RenameRequest):
    engine = await _engine(owner_id)
    return (await engine.rename_playlist(body.path, body.name)).model_dump()


@app.post("/api/users/{owner_id}/collection/playlists/move")
async def move_playlist(owner_id: str, body: MoveRequest):
    engine = await _engine(owner_id)
    return (await engine.move_playlist(body.source_path, body.target_folder_path)).model_dump()


@app.post("/api/users/{owner_id}/collection/playlists/move-batch")
async def move_playlist_batch(owner_id: str, body: MoveBatchRequest):
    engine = await _engine(owner_id)
    return (await engine.move_playlist_batch(body.moves)).model_dump()


@app.post("/api/users/{owner_id}/collection/playlists/duplicate")
async def duplicate_playlist(owner_id: str, body: DuplicateRequest):
    engine = await _engine(owner_id)
    result = await engine.duplicate_playlist(body.source_path, body.target_folder_path, body.name)
    return result.model_dump()


@app.post("/api/users/{owner_id}/collection/playlists/orphans")
async def create_orphans_playlist(owner_id: str, body: OrphansRequest):
    engine = await _engine(owner_id)
    return (await engine.create_orphans_playlist(body.target_folder_path, body.name)).model_dump()


@app.post("/api/users/{owner_id}/collection/nodes/delete")
async def delete_nodes(owner_id: str, body: DeleteRequest):
    engine = await _engine(owner_id)
    return (await engine.delete_nodes(body.paths)).model_dump()


# ---------------------------------------------------------------------------
# Tracks and comments
# ---------------------------------------------------------------------------

class TrackUpdateRequest(BaseModel):
    key: str
    updates: TrackFieldUpdates


class TrackBatchRequest(BaseModel):
    updates: List[TrackUpdate]


class CommentBatchRequest(BaseModel):
    old_comments: List[str]
    new_comment: str = ""


@app.get("/api/users/{owner_id}/collection/tracks")
async def all_tracks(owner_id: str):
    engine = await _engine(owner_id)
    return [row.model_dump() for row in await engine.get_all_tracks()]


@app.post("/api/users/{owner_id}/collection/tracks/update")
async def update_track(owner_id: str, body: TrackUpdateRequest):
    engine = await _engine(owner_id)
    return (await engine.update_track(body.key, body.updates)).model_dump()


@app.post("/api/users/{owner_id}/collection/tracks/update-batch")
async def update_tracks_batch(owner_id: str, body: TrackBatchRequest):
    engine = await _engine(owner_id)
    return (await engine.update_tracks_batch(body.updates)).model_dump()


@app.get("/api/users/{owner_id}/collection/comments")
async def unique_comments(owner_id: str):
    engine = await _engine(owner_id)
    return (await engine.get_unique_comments()).model_dump()


@app.post("/api/users/{owner_id}/collection/comments/update-batch")
async def update_comments_batch(owner_id: str, body: CommentBatchRequest):
    engine = await _engine(owner_id)
    return (await engine.update_comments_batch(body.old_comments, body.new_comment)).model_dump()


# ---------------------------------------------------------------------------
# Style tags
# ---------------------------------------------------------------------------

class StyleTagRequest(BaseModel):
    playlist_paths: List[str]
    tag: str = Field(..., min_length=1)


@app.get("/api/users/{owner_id}/collection/tags")
async def playlists_with_tags(owner_id: str):
    engine = await _engine(owner_id)
    return (await engine.get_playlists_with_tags()).model_dump()


@app.post("/api/users/{owner_id}/collection/tags/preview")
async def tag_count_preview(owner_id: str, body: StyleTagRequest):
    engine = await _engine(owner_id)
    return (await engine.get_tag_count_preview(body.playlist_paths, body.tag)).model_dump()


@app.post("/api/users/{owner_id}/collection/tags/write")
async def write_style_tag(owner_id: str, body: StyleTagRequest):
    engine = await _engine(owner_id)
    return (await engine.write_style_tag_to_tracks(body.playlist_paths, body.tag)).model_dump()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class CompareRequest(BaseModel):
    source: List[NormalizedTrack]
    target: List[NormalizedTrack]
    threshold: Optional[int] = Field(None, ge=0, le=100)


@app.post("/api/compare")
async def compare(body: CompareRequest):
    """Which source tracks the target catalog has, and which it lacks."""
    threshold = body.threshold if body.threshold is not None else settings.match_threshold
    return compare_tracks(body.source, body.target, threshold).model_dump()


@app.get("/api/search/clean")
async def search_clean(q: str):
    return {"query": clean_search_query(q)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    logger.info(f"Starting Crate on port {settings.port}")
    uvicorn.run(
        "mcp_crate.app:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
