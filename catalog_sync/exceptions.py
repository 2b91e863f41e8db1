class SyncError(Exception):
    """Base class for catalog sync errors."""


class PermanentError(SyncError):
    """The job cannot succeed by retrying; it is dead-lettered straight away."""


class DocumentError(PermanentError):
    """A supplier product document could not be turned into a product."""


class SkuConflict(PermanentError):
    """A SKU is already taken by another product or variant of the supplier."""


class SinkError(SyncError):
    """A secondary sink (search index, RAG store) rejected a write."""

    def __init__(self, sink: str, message: str):
        super().__init__(f"{sink}: {message}")
        self.sink = sink


class SyncAlreadyRunning(SyncError):
    def __init__(self, supplier_code: str, session_id: str = ''):
        super().__init__(f"A sync is already running for supplier {supplier_code} ({session_id})")
        self.supplier_code = supplier_code
        self.session_id = session_id


class SessionNotFound(SyncError):
    def __init__(self, session_id: str):
        super().__init__(f"Sync session {session_id} not found")
        self.session_id = session_id
