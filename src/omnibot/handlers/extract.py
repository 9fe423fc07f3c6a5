"""ZIP extraction.

``/extract`` opens an ``extract`` session; the next document in that chat is
opened as a ZIP archive. Its files can then be sent back all at once or picked
one by one from a paged list. The archive stays in the session until the user
is done or the session expires.
"""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import DocumentEvent, EventKind
from omnibot.exceptions import MalformedInputError, UpstreamUnavailableError
from omnibot.gateway import Button
from omnibot.handlers.common import policy_for
from omnibot.registry import AnyEvent, CallbackPrefix, CommandRegistry

logger = logging.getLogger(__name__)

FLOW = "extract"

AWAITING = "awaiting"
READY = "ready"

MAX_FILE_SIZE_MB = 50  # Telegram limit
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

MAX_ENTRIES = 500

FILES_PER_PAGE = 8

MAX_LABEL_LENGTH = 40


class ExtractCallback(CallbackData, prefix="ext"):
    """Extraction button; ``index`` points into the archive's entry list."""

    action: str
    index: int = -1
    page: int = 0


@dataclass
class SendResult:
    """Result of sending one archive member.

    Attributes:
        success: Whether the file was sent.
        path: Path of the file inside the archive.
        error: Why sending failed.
    """

    success: bool
    path: str
    error: str | None = None


def format_file_size(size: int) -> str:
    value = float(size)
    for unit in ("Bytes", "KB", "MB"):
        if value < 1024:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{round(value, 2):g} GB"


def list_entries(archive: zipfile.ZipFile) -> list[dict[str, Any]]:
    """Every file and folder in the archive, sorted by path.

    Folders that only appear as part of a file's path are listed too.
    """
    entries: dict[str, dict[str, Any]] = {}
    for info in archive.infolist():
        path = info.filename.rstrip("/")
        if not path:
            continue
        if info.is_dir():
            entries.setdefault(path, {"path": path, "is_dir": True, "size": 0})
        else:
            entries[path] = {"path": path, "is_dir": False, "size": info.file_size}

        parts = path.split("/")
        for depth in range(1, len(parts)):
            folder = "/".join(parts[:depth])
            entries.setdefault(folder, {"path": folder, "is_dir": True, "size": 0})
    return [entries[path] for path in sorted(entries)]


def read_archive(data: bytes) -> list[dict[str, Any]]:
    """List a ZIP archive's entries.

    Raises:
        MalformedInputError: If the data is not a readable, non-empty ZIP
            archive of a manageable size.
    """
    buffer = io.BytesIO(data)
    if not zipfile.is_zipfile(buffer):
        raise MalformedInputError("The file you sent is not a ZIP file.")
    try:
        with zipfile.ZipFile(buffer) as archive:
            entries = list_entries(archive)
    except zipfile.BadZipFile as e:
        raise MalformedInputError("The ZIP file could not be read.") from e

    if not entries:
        raise MalformedInputError("The ZIP file is empty.")
    if len(entries) > MAX_ENTRIES:
        raise MalformedInputError(f"The ZIP file has more than {MAX_ENTRIES} files and folders.")
    return entries


def count_entries(entries: list[dict[str, Any]]) -> tuple[int, int]:
    """Count files and folders."""
    folders = sum(1 for entry in entries if entry["is_dir"])
    return len(entries) - folders, folders


def _label(entry: dict[str, Any]) -> str:
    path = entry["path"]
    if len(path) > MAX_LABEL_LENGTH:
        path = "…" + path[-(MAX_LABEL_LENGTH - 1) :]
    return f"{'📁' if entry['is_dir'] else '📄'} {path}"


def action_keyboard() -> list[list[Button]]:
    return [
        [
            Button("📤 Send All", ExtractCallback(action="all").pack()),
            Button("📋 Select Files", ExtractCallback(action="select").pack()),
        ]
    ]


def file_keyboard(entries: list[dict[str, Any]], page: int = 0) -> list[list[Button]]:
    last_page = max(0, (len(entries) - 1) // FILES_PER_PAGE)
    page = min(max(page, 0), last_page)
    start = page * FILES_PER_PAGE

    rows = [
        [Button(_label(entry), ExtractCallback(action="file", index=start + i, page=page).pack())]
        for i, entry in enumerate(entries[start : start + FILES_PER_PAGE])
    ]
    nav: list[Button] = []
    if page > 0:
        nav.append(Button("⬅️ Previous", ExtractCallback(action="page", page=page - 1).pack()))
    if page < last_page:
        nav.append(Button("➡️ Next", ExtractCallback(action="page", page=page + 1).pack()))
    if nav:
        rows.append(nav)
    rows.append([Button("✅ Done", ExtractCallback(action="done").pack())])
    return rows


async def send_entry(ctx: HandlerContext, archive: zipfile.ZipFile, entry: dict[str, Any]) -> SendResult:
    path = entry["path"]
    size = entry["size"]
    if size > MAX_FILE_SIZE_BYTES:
        return SendResult(False, path, error=f"File too large ({format_file_size(size)})")

    try:
        content = archive.read(path)
    except (zipfile.BadZipFile, KeyError, RuntimeError, NotImplementedError, zlib.error) as e:
        # RuntimeError: encrypted member; NotImplementedError: unsupported compression
        logger.warning(
            "Archive member unreadable", extra={"chat_id": ctx.chat_id, "path": path, "error": str(e)}
        )
        return SendResult(False, path, error="File could not be read")

    caption = f"File: {path}\nSize: {format_file_size(size)}"
    sent = await ctx.gateway.send_document(ctx.chat_id, content, PurePosixPath(path).name, caption=caption)
    if sent is None:
        return SendResult(False, path, error="Telegram did not accept the file")
    return SendResult(True, path)


async def extract_command(ctx: HandlerContext) -> None:
    ctx.save_session({"stage": AWAITING})
    await ctx.reply("📦 Please send me a ZIP file to extract.")


async def extract_document(ctx: HandlerContext) -> None:
    event = ctx.event
    if ctx.session is None or not isinstance(event, DocumentEvent):
        # Document without a pending /extract
        return
    if ctx.session.get("stage") != AWAITING:
        return

    status_id = await ctx.reply("⏳ Processing your ZIP file...")

    async def status(text: str, keyboard: list[list[Button]] | None = None) -> None:
        if status_id is None:
            await ctx.reply(text, keyboard=keyboard)
        else:
            await ctx.gateway.edit_message_text(ctx.chat_id, status_id, text, keyboard=keyboard)

    data = await ctx.gateway.download_file(event.file_ref)
    if not data:
        ctx.end_session()
        raise UpstreamUnavailableError("telegram", message="Document could not be downloaded")

    try:
        entries = read_archive(data)
    except MalformedInputError as e:
        ctx.end_session()
        logger.info("Archive rejected", extra={"chat_id": ctx.chat_id, "reason": e.message})
        await status(f"❌ {e.message}")
        return

    ctx.save_session({"stage": READY, "archive": data, "entries": entries})
    logger.info(
        "Archive opened",
        extra={"chat_id": ctx.chat_id, "file_name": event.file_name, "entries": len(entries)},
    )
    await status(
        f"✅ ZIP file extracted successfully!\nFound {len(entries)} files/folders.\nWhat would you like to do?",
        keyboard=action_keyboard(),
    )


async def send_all(ctx: HandlerContext, archive_data: bytes, entries: list[dict[str, Any]]) -> None:
    await ctx.answer()
    await ctx.edit("📤 Sending all files...")

    results: list[SendResult] = []
    with zipfile.ZipFile(io.BytesIO(archive_data)) as archive:
        for entry in entries:
            if not entry["is_dir"]:
                results.append(await send_entry(ctx, archive, entry))

    failed = [result for result in results if not result.success]
    for result in failed:
        logger.warning(
            "Archive member not sent",
            extra={"chat_id": ctx.chat_id, "path": result.path, "error": result.error},
        )
    ctx.end_session()

    summary = f"✅ Sent {len(results) - len(failed)} files successfully."
    if failed:
        summary += f"\n❌ Failed to send {len(failed)} files."
    await ctx.reply(summary)


async def extract_callback(ctx: HandlerContext) -> None:
    data = ExtractCallback.unpack(ctx.event.text)
    if ctx.session.get("stage") != READY:
        await ctx.answer("📦 Send me the ZIP file first.", show_alert=True)
        return

    archive_data: bytes = ctx.session["archive"]
    entries: list[dict[str, Any]] = ctx.session["entries"]
    ctx.sessions.touch(ctx.session_key)

    if data.action == "all":
        await send_all(ctx, archive_data, entries)
    elif data.action == "select":
        files, folders = count_entries(entries)
        await ctx.answer()
        await ctx.edit(
            f"Select files to send:\nTotal: {files} files, {folders} folders",
            keyboard=file_keyboard(entries),
        )
    elif data.action == "page":
        await ctx.answer()
        if ctx.message_id is not None:
            await ctx.gateway.edit_reply_markup(ctx.chat_id, ctx.message_id, file_keyboard(entries, data.page))
    elif data.action == "file":
        if not 0 <= data.index < len(entries):
            await ctx.answer("❌ File not found", show_alert=True)
            return
        entry = entries[data.index]
        if entry["is_dir"]:
            await ctx.answer("📁 This is a directory", show_alert=True)
            return
        with zipfile.ZipFile(io.BytesIO(archive_data)) as archive:
            result = await send_entry(ctx, archive, entry)
        if result.success:
            await ctx.answer("✅ File sent!")
        else:
            await ctx.answer(f"❌ Failed to send file: {result.error}", show_alert=True)
    elif data.action == "done":
        files, folders = count_entries(entries)
        ctx.end_session()
        await ctx.answer()
        await ctx.edit(f"File extraction complete:\nTotal extracted: {files} files, {folders} folders")
    else:
        await ctx.answer("❌ Invalid action", show_alert=True)


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command(
        "extract",
        "ext",
        policy=policy_for(settings, "extract"),
        session_flow=FLOW,
        description="Unpack a ZIP file",
    )(extract_command)
    registry.add(
        "extract_button",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("ext"),
        extract_callback,
        session_flow=FLOW,
        requires_session=True,
    )
    registry.add("extract_document", EventKind.DOCUMENT, AnyEvent(), extract_document, session_flow=FLOW)
