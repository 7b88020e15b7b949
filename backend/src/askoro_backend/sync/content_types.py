"""File extension to MIME type table for repository files."""

from typing import Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"

EXTENSION_CONTENT_TYPES = {
    # Text and data
    "txt": "text/plain",
    "md": "text/markdown",
    "json": "application/json",
    "yml": "text/yaml",
    "yaml": "text/yaml",
    "xml": "application/xml",
    "csv": "text/csv",
    # JavaScript / TypeScript
    "js": "application/javascript",
    "jsx": "application/javascript",
    "ts": "application/typescript",
    "tsx": "application/typescript",
    # Source code
    "py": "text/x-python",
    "java": "text/x-java-source",
    "c": "text/x-c",
    "h": "text/x-c",
    "cpp": "text/x-c++",
    "hpp": "text/x-c++",
    "go": "text/x-go",
    "rs": "text/rust",
    "rb": "text/x-ruby",
    "php": "text/x-php",
    "swift": "text/x-swift",
    "kt": "text/x-kotlin",
    # Web
    "html": "text/html",
    "css": "text/css",
    "scss": "text/x-scss",
    "less": "text/x-less",
    # Config
    "env": "text/plain",
    "gitignore": "text/plain",
    "dockerfile": "text/plain",
    "makefile": "text/plain",
}


def content_type_for_path(path: Optional[str]) -> str:
    """Guess a MIME type from the last extension of ``path``.

    Extensionless names like ``Dockerfile`` match on the whole lowercased name.
    """
    if not path:
        return DEFAULT_CONTENT_TYPE
    name = path.rsplit("/", 1)[-1].lower()
    extension = name.rsplit(".", 1)[-1]
    return EXTENSION_CONTENT_TYPES.get(extension, DEFAULT_CONTENT_TYPE)
