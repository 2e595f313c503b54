"""Content-type lookup keyed by file extension."""
import mimetypes

DEFAULT_TYPE = "application/octet-stream"


def lookup(file_name: str) -> str:
    guessed_type, _ = mimetypes.guess_type(file_name, strict=False)
    return guessed_type or DEFAULT_TYPE
