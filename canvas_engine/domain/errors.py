from typing import Iterable, Optional


class CanvasError(Exception):
    """Base class for canvas engine errors"""


class StructuralError(CanvasError):
    """A cycle was found where the graph must be acyclic"""

    def __init__(self, message: str, card_ids: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.card_ids = sorted(card_ids or [])


class MissingReferenceError(CanvasError, KeyError):
    """Operation referenced a card or edge that does not exist"""

    def __init__(self, ref_id: str, kind: str = "card"):
        super().__init__(f"unknown {kind}: {ref_id}")
        self.ref_id = ref_id
        self.kind = kind

    def __str__(self) -> str:
        return self.args[0]


class IndexSyncFailure(CanvasError):
    """A search-index or embedding-store call failed"""

    def __init__(self, operation: str, card_id: str, cause: BaseException):
        super().__init__(f"{operation} failed for {card_id}: {cause}")
        self.operation = operation
        self.card_id = card_id
        self.cause = cause


class GenerationFailure(CanvasError):
    """The completion provider could not produce a response for a card"""

    def __init__(self, card_id: str, cause: BaseException):
        super().__init__(f"generation failed for {card_id}: {cause}")
        self.card_id = card_id
        self.cause = cause
