class MedSenseError(Exception):
    """Base class for errors raised by the ingestion and retrieval core."""


class ExtractionError(MedSenseError):
    """The document type is unsupported or its text could not be recovered."""


class EmptyDocumentError(ExtractionError):
    """Extraction finished but produced no usable text."""


class EmbeddingError(MedSenseError):
    """Embedding failed for a single input (empty text or service failure)."""


class StorageError(MedSenseError):
    """Object store or record store operation failed."""


class GenerationError(MedSenseError):
    """The completion service did not return an answer."""


class DocumentNotFoundError(MedSenseError):
    pass


class InvalidStageTransition(MedSenseError):
    pass


class VectorValidationError(MedSenseError, ValueError):
    """Vectors are not comparable (length mismatch, non-numeric or non-finite values)."""


class HallucinationWarning(UserWarning):
    """A generated answer mentions a date that is absent from the retrieved context."""
