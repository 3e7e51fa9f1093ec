"""
Error taxonomy for the collection engine.

Every error carries the HTTP status the web layer answers with, so routes
can translate any CollectionError without a lookup table of their own.
"""


class CollectionError(Exception):
    """Base class for collection failures."""

    status_code = 500


class NodeNotFoundError(CollectionError):
    """A path does not resolve in the current path index."""

    status_code = 404

    def __init__(self, path: str) -> None:
        super().__init__(f"Unable to find node for path: {path}")
        self.path = path


class TypeMismatchError(CollectionError):
    """The node exists but is the wrong kind (folder vs playlist)."""

    status_code = 409


class StaleReferenceError(CollectionError):
    """An indexed node is no longer where the index says it is."""

    status_code = 409

    def __init__(self, node_id: int) -> None:
        super().__init__(f"Node {node_id} is missing from its parent")
        self.node_id = node_id


class TrackNotFoundError(CollectionError):
    status_code = 404

    def __init__(self, key: str) -> None:
        super().__init__(f"Track not found: {key}")
        self.key = key


class SessionExpiredError(CollectionError):
    """A transient in-memory collection was evicted or never populated."""

    status_code = 410

    def __init__(self, owner_id: str = "") -> None:
        super().__init__("Session expired: in-memory collection lost. Please upload again.")
        self.owner_id = owner_id


class UpstreamUnavailableError(CollectionError):
    """The stored document could not be fetched."""

    status_code = 502


class PersistenceError(CollectionError):
    """Writing the document to the blob store or pointer record failed."""

    status_code = 503


class CollectionNotLoadedError(CollectionError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__("Collection not loaded")


class DocumentError(CollectionError):
    """The collection document could not be parsed."""

    status_code = 422
