from __future__ import annotations

from datetime import datetime, timezone

from storycli.adapters.file_tracker import (
    change_type_for,
    derive_file_change,
    normalize_tool_name,
)
from storycli.shared.models.log import ChangeType

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_normalize_tool_name_aliases() -> None:
    assert normalize_tool_name("write_file") == "Write"
    assert normalize_tool_name("edit_file") == "Edit"
    assert normalize_tool_name("mcp__srv__read_file") == "Read"
    assert normalize_tool_name("Bash") == "Bash"
    assert normalize_tool_name("") == ""


def test_change_type_mapping() -> None:
    assert change_type_for("Edit") == ChangeType.EDIT
    assert change_type_for("MultiEdit") == ChangeType.EDIT
    assert change_type_for("Write") == ChangeType.WRITE
    assert change_type_for("NotebookEdit") == ChangeType.WRITE
    assert change_type_for("Read") == ChangeType.READ
    assert change_type_for("delete_file") == ChangeType.DELETE
    assert change_type_for("Bash") is None


def test_write_alias_produces_change_with_preview() -> None:
    content = "x" * 500
    change = derive_file_change(
        "write_file",
        {"file_path": "characters/ana.md", "content": content},
        tool_use_id="tool-1",
        timestamp=NOW,
    )

    assert change is not None
    assert change.file_path == "characters/ana.md"
    assert change.change_type == ChangeType.WRITE
    assert change.tool_use_id == "tool-1"
    assert change.preview == "x" * 200
    assert change.timestamp == NOW


def test_edit_preview_comes_from_new_string() -> None:
    change = derive_file_change(
        "mcp__orchestrator__edit_file",
        {"path": "scenes/1.md", "old_string": "a", "new_string": "b"},
        tool_use_id="tool-2",
        timestamp=NOW,
    )

    assert change is not None
    assert change.change_type == ChangeType.EDIT
    assert change.preview == "b"


def test_read_has_no_preview_and_notebook_path_is_used() -> None:
    read = derive_file_change("Read", {"file_path": "a.md"}, tool_use_id=None, timestamp=NOW)
    notebook = derive_file_change(
        "NotebookEdit",
        {"notebook_path": "n.ipynb", "new_source": "print(1)"},
        tool_use_id="t",
        timestamp=NOW,
    )

    assert read is not None and read.preview is None and read.tool_use_id is None
    assert notebook is not None and notebook.file_path == "n.ipynb"


def test_non_file_tools_and_missing_paths_are_ignored() -> None:
    assert derive_file_change("Bash", {"command": "ls"}, tool_use_id="t", timestamp=NOW) is None
    assert derive_file_change("Write", {"content": "x"}, tool_use_id="t", timestamp=NOW) is None
