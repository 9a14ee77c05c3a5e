"""Content lifecycle of logical ids."""

from .lifecycle import ContentLifecycle, ContentResult, select_path

__all__ = ["ContentLifecycle", "ContentResult", "select_path"]
