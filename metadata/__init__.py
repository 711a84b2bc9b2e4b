from .naming import build_attachment_filename, sanitize_filename

__all__ = ["build_attachment_filename", "sanitize_filename"]
