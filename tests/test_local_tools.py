"""Tests for local_tools.py - built-in fallback tools."""

from unittest.mock import patch

import pytest

from dictate_tools import local_tools
from dictate_tools.local_tools import LOCAL_TOOLS, get_local_tool


class TestToolTable:
    """Tests for the built-in tool table."""

    def test_four_tools_in_fixed_order(self):
        """Test the names and order of the built-in tools."""
        assert [tool.descriptor.name for tool in LOCAL_TOOLS] == [
            "create_file",
            "read_file",
            "list_files",
            "send_notification",
        ]

    def test_schemas_declare_required_arguments(self):
        """Test that each schema is an object with its required fields."""
        required = {tool.descriptor.name: tool.descriptor.input_schema["required"] for tool in LOCAL_TOOLS}
        assert required == {
            "create_file": ["path", "content"],
            "read_file": ["path"],
            "list_files": ["path"],
            "send_notification": ["title", "message"],
        }

    def test_get_local_tool(self):
        """Test lookup by name."""
        assert get_local_tool("read_file").handler is local_tools.read_file
        assert get_local_tool("nope") is None


class TestFileTools:
    """Tests for the file tools."""

    def test_create_file_makes_parent_directories(self, tmp_path):
        """Test that create_file writes content and creates missing folders."""
        target = tmp_path / "a" / "b" / "note.md"

        result = local_tools.create_file({"path": str(target), "content": "# Hello"})

        assert target.read_text(encoding="utf-8") == "# Hello"
        assert result.as_text() == f"File created: {target}"

    def test_read_file_returns_content(self, tmp_path):
        """Test that read_file returns the text of the file."""
        target = tmp_path / "note.txt"
        target.write_text("remember the milk", encoding="utf-8")

        result = local_tools.read_file({"path": str(target)})

        assert result.as_text() == "remember the milk"
        assert result.is_error is False

    def test_read_missing_file_raises(self, tmp_path):
        """Test that errors propagate to the caller, which turns them into results."""
        with pytest.raises(FileNotFoundError):
            local_tools.read_file({"path": str(tmp_path / "missing.txt")})

    def test_list_files_sorted_with_dir_suffix(self, tmp_path):
        """Test that directories are marked and entries are sorted."""
        (tmp_path / "b.txt").write_text("", encoding="utf-8")
        (tmp_path / "a.txt").write_text("", encoding="utf-8")
        (tmp_path / "sub").mkdir()

        result = local_tools.list_files({"path": str(tmp_path)})

        assert result.as_text().splitlines() == ["a.txt", "b.txt", "sub/"]

    def test_list_empty_directory(self, tmp_path):
        """Test the message for an empty directory."""
        result = local_tools.list_files({"path": str(tmp_path)})
        assert result.as_text() == f"No files in {tmp_path}"

    def test_missing_arguments(self):
        """Test that missing or non-string arguments are rejected."""
        with pytest.raises(ValueError, match="Missing required argument\\(s\\): content"):
            local_tools.create_file({"path": "/tmp/x"})
        with pytest.raises(ValueError, match="path"):
            local_tools.list_files({"path": 42})


class TestNotifications:
    """Tests for desktop notifications."""

    def test_send_notification_result(self):
        """Test that send_notification reports the title."""
        with patch("dictate_tools.local_tools.show_notification") as mock_show:
            result = local_tools.send_notification({"title": "Done", "message": "Saved"})

        mock_show.assert_called_once_with("Done", "Saved")
        assert result.as_text() == "Notification sent: Done"

    def test_linux_uses_notify_send(self):
        """Test that notify-send is used when available."""
        with patch("dictate_tools.local_tools.platform.system", return_value="Linux"), patch(
            "dictate_tools.local_tools.shutil.which", return_value="/usr/bin/notify-send"
        ), patch("dictate_tools.local_tools.subprocess.run") as mock_run:
            assert local_tools.show_notification("Title", "Body") is True

        command = mock_run.call_args.args[0]
        assert command[0] == "notify-send"
        assert command[-2:] == ["Title", "Body"]

    def test_macos_uses_osascript_with_quoting(self):
        """Test that AppleScript strings are escaped."""
        with patch("dictate_tools.local_tools.platform.system", return_value="Darwin"), patch(
            "dictate_tools.local_tools.subprocess.run"
        ) as mock_run:
            local_tools.show_notification('Say "hi"', "Body")

        command = mock_run.call_args.args[0]
        assert command[:2] == ["osascript", "-e"]
        assert 'with title "Say \\"hi\\""' in command[2]

    def test_no_notifier_available(self, caplog):
        """Test the fallback when no notifier exists."""
        with patch("dictate_tools.local_tools.platform.system", return_value="Linux"), patch(
            "dictate_tools.local_tools.shutil.which", return_value=None
        ), patch("dictate_tools.local_tools.subprocess.run") as mock_run:
            assert local_tools.show_notification("Title", "Body") is False

        mock_run.assert_not_called()

    def test_notifier_failure_returns_false(self):
        """Test that an OSError from the notifier is not raised."""
        with patch("dictate_tools.local_tools.platform.system", return_value="Linux"), patch(
            "dictate_tools.local_tools.shutil.which", return_value="/usr/bin/notify-send"
        ), patch("dictate_tools.local_tools.subprocess.run", side_effect=OSError("no display")):
            assert local_tools.show_notification("Title", "Body") is False
