from pathlib import Path


VIDEO_EXTENSIONS = {".mp4", ".webm", ".mov", ".m4v"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".ogg", ".aac"}
TEXT_EXTENSIONS = {".txt", ".text"}
MARKDOWN_EXTENSIONS = {".md", ".markdown"}
HTML_EXTENSIONS = {".html", ".htm"}

MIME_FILE_TYPES = {
    "application/pdf": "pdf",
    "text/plain": "text",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "text/html": "html",
    "application/xhtml+xml": "html",
    "text/csv": "csv",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/epub+zip": "epub",
}

EXTENSION_FILE_TYPES = {
    ".pdf": "pdf",
    ".csv": "csv",
    ".docx": "docx",
    ".pptx": "pptx",
    ".xlsx": "xlsx",
    ".epub": "epub",
}

INLINE_FILE_TYPES = {"pdf", "text", "markdown", "html", "image", "audio", "video"}
DOWNLOAD_ONLY_FILE_TYPES = {"docx", "epub", "pptx", "xlsx", "csv"}
TEXTLESS_FILE_TYPES = {"image", "audio", "video"}


def _from_extension(suffix: str) -> str | None:
    if suffix in EXTENSION_FILE_TYPES:
        return EXTENSION_FILE_TYPES[suffix]
    if suffix in TEXT_EXTENSIONS:
        return "text"
    if suffix in MARKDOWN_EXTENSIONS:
        return "markdown"
    if suffix in HTML_EXTENSIONS:
        return "html"
    if suffix in VIDEO_EXTENSIONS:
        return "video"
    if suffix in IMAGE_EXTENSIONS:
        return "image"
    if suffix in AUDIO_EXTENSIONS:
        return "audio"
    return None


def normalize_mime(mime: str | None) -> str:
    return (mime or "").split(";", 1)[0].strip().lower()


def detect_file_type(filename: str | None, mime: str | None) -> str:
    normalized = normalize_mime(mime)
    suffix = Path(filename or "").suffix.lower()

    if normalized in MIME_FILE_TYPES:
        return MIME_FILE_TYPES[normalized]
    for family in ("image", "audio", "video"):
        if normalized.startswith(f"{family}/"):
            return family
    # Generic mime types defer to the extension.
    return _from_extension(suffix) or "other"


def can_view_inline(file_type: str) -> bool:
    return file_type in INLINE_FILE_TYPES


def is_unsupported(file_type: str) -> bool:
    return file_type not in INLINE_FILE_TYPES and file_type not in DOWNLOAD_ONLY_FILE_TYPES


def is_textless(file_type: str) -> bool:
    return file_type in TEXTLESS_FILE_TYPES


def unsupported_message(file_type: str) -> str | None:
    if not is_unsupported(file_type):
        return None
    return f'File type "{file_type}" is not supported for viewing. Please download the file instead.'
