"""
Settings for the Crate services

Everything is read from environment variables; unset variables fall back to
defaults suited to a single-machine setup.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

_REPO_ROOT = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


class Settings(BaseModel):
    data_dir: Path = Field(_REPO_ROOT / ".data", description="Blob store and pointer file location")
    max_instances: int = Field(10, ge=1, description="Collections kept in memory at once")
    instance_ttl: int = Field(1800, ge=1, description="Seconds an idle collection stays cached")
    sweep_interval: int = Field(300, ge=1, description="Seconds between TTL sweeps")
    match_threshold: int = Field(70, ge=0, le=100)
    port: int = 8888
    owner_id: str = Field("local", description="Owner served by the MCP server")
    collection_path: Optional[str] = Field(None, description="Document location for the MCP server")

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = os.environ.get("CRATE_DATA_DIR")
        return cls(
            data_dir=Path(data_dir) if data_dir else _REPO_ROOT / ".data",
            max_instances=_env_int("CRATE_MAX_INSTANCES", 10),
            instance_ttl=_env_int("CRATE_INSTANCE_TTL", 1800),
            sweep_interval=_env_int("CRATE_SWEEP_INTERVAL", 300),
            match_threshold=_env_int("CRATE_MATCH_THRESHOLD", 70),
            port=_env_int("CRATE_PORT", 8888),
            owner_id=os.environ.get("CRATE_OWNER_ID") or "local",
            collection_path=os.environ.get("CRATE_COLLECTION_PATH") or None,
        )

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def pointer_file(self) -> Path:
        return self.data_dir / "pointers.json"
