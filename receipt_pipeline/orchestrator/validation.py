"""Synchronous request validation, applied before anything is enqueued."""

from urllib.parse import urlparse

from receipt_pipeline.shared.errors import SubmissionValidationError


def validate_owner(owner_id: int | None) -> int:
    if owner_id is None or owner_id <= 0:
        raise SubmissionValidationError("A signed-in owner is required")
    return owner_id


def validate_document_url(file_url: str | None) -> str:
    """Return the stripped URL, or raise if it is not an absolute http(s) URL."""
    url = (file_url or "").strip()
    if not url:
        raise SubmissionValidationError("file_url is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise SubmissionValidationError(f"file_url must be an http(s) URL: {url!r}")
    return url


def default_file_name(file_url: str, file_name: str | None) -> str:
    """Use the given name, or the last path segment of the URL."""
    if file_name and file_name.strip():
        return file_name.strip()
    return urlparse(file_url).path.rsplit("/", 1)[-1]
