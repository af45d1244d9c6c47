"""
Bazel Format plugin for Sublime Text.

This module provides commands and an event listener that format Bazel files
with an external formatter (buildifier by default).
"""

import os
from typing import Dict, List, Optional

import sublime
import sublime_plugin

from . import bazel_format_core as core

# One adapter per view; a view never runs two formats at once
_adapters: Dict[int, core.FormatAdapter] = {}


def get_settings() -> sublime.Settings:
    """Get plugin settings."""
    return sublime.load_settings("BazelFormat.sublime-settings")


def get_working_dir(view: sublime.View) -> str:
    """
    Determine the working directory for running the formatter.

    Based on the working_dir_mode setting.
    """
    settings = get_settings()
    mode = settings.get("working_dir_mode", "config_dir")
    file_path = view.file_name()
    window = view.window()
    folders = window.folders() if window else []

    if mode == "file_dir" and file_path:
        return os.path.dirname(file_path)

    if mode == "config_dir" and file_path:
        config_dir = core.find_config_dir(file_path)
        if config_dir:
            return config_dir

    # project root, then file dir, then cwd
    if folders:
        return folders[0]
    if file_path:
        return os.path.dirname(file_path)
    return os.getcwd()


def get_file_type(view: sublime.View) -> Optional[str]:
    """Get the formatter --type for the current view."""
    name = view.file_name() or view.name() or ""
    additional_patterns = get_settings().get("additional_file_patterns", {})
    return core.get_file_type(name, additional_patterns)


def is_bazel_file(view: sublime.View) -> bool:
    return get_file_type(view) is not None


def get_config(view: sublime.View) -> core.FormatterConfig:
    """Translate settings for this view into a FormatterConfig."""
    return core.FormatterConfig.from_settings(
        get_settings(),
        file_type=get_file_type(view),
        cwd=get_working_dir(view),
    )


def get_adapter(view: sublime.View) -> core.FormatAdapter:
    adapter = _adapters.get(view.id())
    if adapter is None:
        adapter = core.FormatAdapter()
        _adapters[view.id()] = adapter
    # Settings may change between runs
    adapter.config = get_config(view)
    return adapter


def get_strategy() -> str:
    strategy = get_settings().get("replace_strategy", "minimal")
    if strategy not in core.REPLACE_STRATEGIES:
        return "minimal"
    return strategy


def format_view(view: sublime.View, content: str) -> Optional[str]:
    """
    Run the formatter over content, the whole text of the view.

    Returns:
        Formatted text, or None on failure (a status message is shown)
    """
    adapter = get_adapter(view)
    if adapter.is_formatting:
        return None

    result = adapter.format(content)

    if not result.ok:
        # Non-blocking: no modal dialog on the format path
        sublime.status_message(f"Bazel Format: {result.reason}")
        return None
    return result.text


def replace_view_content(view: sublime.View, content: str) -> None:
    view.run_command(
        "bazel_format_replace_content", {"content": content, "strategy": get_strategy()}
    )


class BazelFormatCommand(sublime_plugin.TextCommand):
    """Format the current file with the external formatter."""

    def run(self, edit: sublime.Edit) -> None:
        if not is_bazel_file(self.view):
            sublime.status_message("Bazel Format: Not a Bazel file")
            return

        content = self.view.substr(sublime.Region(0, self.view.size()))
        formatted = format_view(self.view, content)

        if formatted is None:
            return
        if formatted == content:
            sublime.status_message("Bazel Format: Already formatted")
            return

        replace_view_content(self.view, formatted)
        sublime.status_message("Bazel Format: Formatted")

    def is_enabled(self) -> bool:
        return is_bazel_file(self.view)


class BazelFormatReplaceContentCommand(sublime_plugin.TextCommand):
    """Internal command that replaces the buffer and restores selections."""

    def run(self, edit: sublime.Edit, content: str, strategy: str = "minimal") -> None:
        old = self.view.substr(sublime.Region(0, self.view.size()))
        selections = [(sel.a, sel.b) for sel in self.view.sel()]
        viewport = self.view.viewport_position()

        if strategy == "minimal":
            text_edit = core.compute_edit(old, content)
            if text_edit is None:
                return
            self.view.replace(edit, sublime.Region(text_edit.begin, text_edit.end), text_edit.text)
        else:
            self.view.replace(edit, sublime.Region(0, self.view.size()), content)

        self.view.sel().clear()
        for a, b in core.restore_selections(selections, old, content, strategy):
            self.view.sel().add(sublime.Region(a, b))
        self.view.set_viewport_position(viewport, False)


class BazelFormatShowInfoCommand(sublime_plugin.TextCommand):
    """Show debug information about the formatter configuration."""

    def run(self, edit: sublime.Edit) -> None:
        window = self.view.window()
        if not window:
            return

        config = get_config(self.view)
        executable = core.resolve_executable(config.command)
        settings = get_settings()

        lines: List[str] = ["Bazel Format Info\n", "=" * 40 + "\n\n"]
        lines.append(f"Formatter command: {config.command}\n")
        lines.append(f"Formatter path: {executable or 'Not found'}\n")
        if executable:
            version = core.format_text("", core.FormatterConfig(command=executable, args=["--version"]))
            if version.ok:
                lines.append(f"Version: {version.text.strip()}\n")

        lines.append("\n")
        lines.append(f"Current file: {self.view.file_name() or 'Untitled'}\n")
        lines.append(f"File type: {config.file_type or 'Unknown'}\n")
        lines.append(f"Working directory: {config.cwd}\n")

        lines.append("\nSettings:\n")
        for key, default in (
            ("formatter_args", []),
            ("formatter_timeout", core.DEFAULT_TIMEOUT_MS),
            ("format_on_save", True),
            ("replace_strategy", "minimal"),
            ("working_dir_mode", "config_dir"),
        ):
            lines.append(f"  {key}: {settings.get(key, default)}\n")

        panel = window.create_output_panel("bazel_format_info")
        panel.set_read_only(False)
        panel.run_command("append", {"characters": "".join(lines)})
        panel.set_read_only(True)
        window.run_command("show_panel", {"panel": "output.bazel_format_info"})


class BazelFormatEventListener(sublime_plugin.EventListener):
    """Format on save."""

    def on_pre_save(self, view: sublime.View) -> None:
        if not is_bazel_file(view):
            return
        if not get_settings().get("format_on_save", True):
            return

        content = view.substr(sublime.Region(0, view.size()))
        formatted = format_view(view, content)
        if formatted is not None and formatted != content:
            replace_view_content(view, formatted)

    def on_close(self, view: sublime.View) -> None:
        _adapters.pop(view.id(), None)
