"""File-change derivation for tool_use events.

Workers report tool calls under provider-specific names; they are
normalized to canonical names before deciding whether a call touched a
file and how.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from storycli.shared.models.log import ChangeType, FileChange

PREVIEW_CHARS = 200

_TOOL_NAME_ALIASES: dict[str, str] = {
    "read": "Read",
    "read_file": "Read",
    "file_read": "Read",
    "write": "Write",
    "write_file": "Write",
    "file_write": "Write",
    "create_file": "Write",
    "edit": "Edit",
    "edit_file": "Edit",
    "file_edit": "Edit",
    "str_replace": "Edit",
    "multiedit": "MultiEdit",
    "multi_edit": "MultiEdit",
    "notebookedit": "NotebookEdit",
    "notebook_edit": "NotebookEdit",
    "delete": "Delete",
    "delete_file": "Delete",
    "remove_file": "Delete",
}

_CHANGE_TYPES: dict[str, ChangeType] = {
    "Edit": ChangeType.EDIT,
    "MultiEdit": ChangeType.EDIT,
    "Write": ChangeType.WRITE,
    "NotebookEdit": ChangeType.WRITE,
    "Read": ChangeType.READ,
    "Delete": ChangeType.DELETE,
}

_PATH_KEYS = ("file_path", "filePath", "path", "notebook_path")
_CONTENT_KEYS = ("content", "new_string", "new_source")


def normalize_tool_name(tool_name: str) -> str:
    """Map provider-specific tool aliases to canonical names.

    MCP-qualified names (``mcp__server__tool``) are reduced to the tool part.
    """
    if not tool_name:
        return ""
    bare_name = tool_name
    if bare_name.startswith("mcp__") and bare_name.count("__") >= 2:
        bare_name = bare_name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(bare_name.lower(), bare_name)


def change_type_for(tool_name: str) -> ChangeType | None:
    return _CHANGE_TYPES.get(normalize_tool_name(tool_name))


def extract_file_path(tool_input: dict[str, Any]) -> str:
    for key in _PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _preview(tool_input: dict[str, Any]) -> str | None:
    for key in _CONTENT_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value[:PREVIEW_CHARS]
    edits = tool_input.get("edits")
    if isinstance(edits, list) and edits and isinstance(edits[0], dict):
        first = edits[0].get("new_string")
        if isinstance(first, str):
            return first[:PREVIEW_CHARS]
    return None


def derive_file_change(
    tool_name: str,
    tool_input: dict[str, Any],
    *,
    tool_use_id: str | None,
    timestamp: datetime,
) -> FileChange | None:
    """FileChange for a file-touching tool call, else None."""
    change_type = change_type_for(tool_name)
    if change_type is None:
        return None
    file_path = extract_file_path(tool_input)
    if not file_path:
        return None
    return FileChange(
        file_path=file_path,
        change_type=change_type,
        timestamp=timestamp,
        tool_use_id=tool_use_id or None,
        preview=_preview(tool_input) if change_type in (ChangeType.EDIT, ChangeType.WRITE) else None,
    )
