"""Export the chat history found in a device backup to browsable pages.

One pass loads the backup index, walks every account and conversation,
renders the records above the stored high-water mark and writes

* ``<output>/index.html`` listing the accounts,
* ``<output>/<account>/index.html`` listing the conversations,
* ``<output>/<account>/<conversation>.html`` with the first page of messages
  inline and the remaining pages in ``<conversation>_files/Data/msg-<n>.js``.

Passes run on a worker thread started with :meth:`Exporter.start`; the
caller may :meth:`Exporter.cancel` at any time.  Cancellation is observed
between conversations and between records, and whatever was rendered before
it is still merged into the incremental state.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import quote

from chat_records import (
    APP_DOMAIN,
    SHARED_DOMAIN,
    Account,
    ChatCatalog,
    Conversation,
    index_loading_filter,
    load_catalog,
    open_enumerator,
)
from export_state import (
    OPT_INCREMENTAL,
    ExportContext,
    ExportOptions,
    StateStore,
    merge_fragments,
    read_fragments,
    write_fragments,
)
from html_pdf import PdfConversionTask
from itunes_index import BackupLoadError, ITunesDb
from render_messages import ConversationContext, MessageRenderer, TemplateSet
from task_manager import TaskManager

logger = logging.getLogger(__name__)

_INVALID_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
_DATA_CHUNK_RE = re.compile(r"^msg-(\d+)\.js$")

TASK_POLL_INTERVAL = 0.512


class ExportStatus(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ExportNotifier:
    """Receives progress events of an export pass.  All hooks are optional."""

    def on_start(self) -> None:
        pass

    def on_complete(self, cancelled: bool) -> None:
        pass

    def on_session_start(self, usr_name: str, total: int) -> None:
        pass

    def on_session_progress(self, usr_name: str, done: int, total: int) -> None:
        pass

    def on_session_complete(self, usr_name: str, cancelled: bool) -> None:
        pass

    def on_tasks_start(self, account: str, total: int) -> None:
        pass

    def on_tasks_progress(self, account: str, done: int, total: int) -> None:
        pass

    def on_tasks_complete(self, account: str, cancelled: bool) -> None:
        pass


# Naming ----------------------------------------------------------------------

def remove_invalid_chars(name: str) -> str:
    return _INVALID_CHARS_RE.sub("", name).strip().rstrip(".")


def is_valid_file_name(name: str) -> bool:
    return bool(name) and name not in {".", ".."} and len(name.encode("utf-8")) <= 200


def choose_output_name(
    candidates: Iterable[Optional[str]], used: FrozenSet[str]
) -> Tuple[Optional[str], FrozenSet[str]]:
    """Pick the first usable candidate name that does not clash with ``used``.

    A clashing name gets the first free ``_<n>`` suffix starting at 2.
    Returns the chosen name (``None`` if no candidate is usable) and the
    updated set of used names.
    """

    for candidate in candidates:
        name = remove_invalid_chars(candidate or "")
        if not is_valid_file_name(name):
            continue
        if name in used:
            idx = 2
            while f"{name}_{idx}" in used:
                idx += 1
            name = f"{name}_{idx}"
        return name, used | {name}
    return None, used


def paginate(
    fragments: Sequence[bytes], page_size: int, single_page: bool
) -> Tuple[List[bytes], List[List[bytes]]]:
    """Split ``fragments`` into the inline page and the lazily loaded pages."""

    if single_page or len(fragments) <= page_size:
        return list(fragments), []
    inline = list(fragments[:page_size])
    rest = fragments[page_size:]
    pages = [list(rest[i:i + page_size]) for i in range(0, len(rest), page_size)]
    return inline, pages


def load_chat_catalog(backup_dir: str) -> ChatCatalog:
    """Quickly list accounts and conversations without loading media entries."""

    index = ITunesDb(backup_dir)
    index.load(APP_DOMAIN, only_file=True, loading_filter=index_loading_filter)
    return load_catalog(index)


# Exporter --------------------------------------------------------------------

@dataclass
class _Pass:
    index: ITunesDb
    shared_index: Optional[ITunesDb]
    catalog: ChatCatalog
    state: StateStore
    context: ExportContext
    options: ExportOptions
    templates: TemplateSet


class Exporter:
    def __init__(
        self,
        backup_dir: str,
        output_dir: str,
        options: Optional[ExportOptions] = None,
        renderer=None,
        notifier: Optional[ExportNotifier] = None,
        work_dir: Optional[str] = None,
        selection: Optional[Dict[str, Optional[Set[str]]]] = None,
        task_manager_factory: Callable[[], TaskManager] = TaskManager,
    ) -> None:
        self.backup_dir = backup_dir
        self.output_dir = output_dir
        self.options = options or ExportOptions()
        self.renderer = renderer or MessageRenderer()
        self.notifier = notifier or ExportNotifier()
        self.work_dir = work_dir or os.path.dirname(os.path.abspath(__file__))
        self.selection = selection
        self.task_manager_factory = task_manager_factory
        self.status: Optional[ExportStatus] = None
        self.failure_reason = ""
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._active = False
        self._thread: Optional[threading.Thread] = None

    # Control ---------------------------------------------------------------

    def start(self) -> bool:
        """Run a pass on a background thread; ``False`` if one is running."""

        with self._lock:
            if self._active:
                logger.warning("Previous task has not completed.")
                return False
            if not os.path.isdir(self.output_dir):
                logger.error("Can't access output directory: %s", self.output_dir)
                return False
            self._active = True
            self._cancelled.clear()
            self.status = None
            self._thread = threading.Thread(target=self._guarded_pass, name="exp", daemon=True)
            self._thread.start()
        return True

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def is_running(self) -> bool:
        return self._active

    def wait_for_completion(self, timeout: Optional[float] = None) -> Optional[ExportStatus]:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.status

    def run(self) -> Optional[ExportStatus]:
        """Run a pass on the calling thread; ``None`` if one is running."""

        with self._lock:
            if self._active:
                logger.warning("Previous task has not completed.")
                return None
            self._active = True
            self._cancelled.clear()
            self.status = None
        return self._guarded_pass()

    # Pass ------------------------------------------------------------------

    def _guarded_pass(self) -> ExportStatus:
        try:
            return self._run_pass()
        except Exception as exc:
            logger.exception("Export pass aborted")
            return self._fail(f"Unexpected error during export: {exc}")
        finally:
            with self._lock:
                self._active = False

    def _fail(self, reason: str) -> ExportStatus:
        logger.error(reason)
        self.failure_reason = reason
        self.status = ExportStatus.FAILED
        self.notifier.on_complete(False)
        return self.status

    def _load_indexes(self) -> Tuple[ITunesDb, Optional[ITunesDb]]:
        index = ITunesDb(self.backup_dir)
        index.load(APP_DOMAIN)
        logger.info("iTunes Version: %s, iOS Version: %s", index.version, index.ios_version)

        shared = ITunesDb(self.backup_dir)
        try:
            shared.load(SHARED_DOMAIN)
        except BackupLoadError as exc:
            logger.info("Shared domain not available: %s", exc)
            return index, None
        return index, shared

    def _run_pass(self) -> ExportStatus:
        started = time.time()
        self.failure_reason = ""
        self.notifier.on_start()
        logger.info("iTunes Backup: %s", self.backup_dir)

        if not os.path.isdir(self.output_dir):
            return self._fail(f"Can't access output directory: {self.output_dir}")
        try:
            index, shared_index = self._load_indexes()
        except BackupLoadError as exc:
            return self._fail(f"Failed to parse the backup data in {self.backup_dir}: {exc}")

        catalog = load_catalog(index)
        logger.info("%d account(s) found.", len(catalog.accounts))

        state = StateStore(self.output_dir)
        options = self.options
        context = state.load_context() if options.incremental else None
        if context is not None:
            options = options.with_bits(context.options | OPT_INCREMENTAL)
        else:
            context = ExportContext(options=options.to_bits())

        export = _Pass(
            index=index,
            shared_index=shared_index,
            catalog=catalog,
            state=state,
            context=context,
            options=options,
            templates=TemplateSet(os.path.join(self.work_dir, options.templates_name), options.ext_name),
        )

        items = []
        used: FrozenSet[str] = frozenset()
        for account in catalog.accounts:
            if self.cancelled:
                break
            if self.selection is not None and account.usr_hash not in self.selection:
                continue
            name, used = choose_output_name([account.display_name, account.usr_hash], used)
            if name is None:
                logger.warning("Can't build directory name for user: %s. Skip it.", account.usr_hash)
                continue
            try:
                output_name = self._export_account(export, account, name)
            except OSError as exc:
                logger.error("Failed to export account %s: %s", account.usr_hash, exc)
                continue
            if output_name is not None:
                items.append(
                    {"link": f"{quote(output_name)}/index.{options.ext_name}", "text": account.display_name}
                )

        try:
            Path(self.output_dir, f"index.{options.ext_name}").write_text(
                export.templates.list_frame("", items), encoding="utf-8"
            )
            if len(context) > 0:
                context.refresh_export_time()
                state.save_context(context)
        except OSError as exc:
            logger.error("Failed to write export state: %s", exc)

        elapsed = int(time.time() - started)
        duration = f"{elapsed // 3600:02d}:{elapsed // 60 % 60:02d}:{elapsed % 60:02d}"
        cancelled = self.cancelled
        logger.info("%s in %s.", "Cancelled" if cancelled else "Completed", duration)
        self.status = ExportStatus.CANCELLED if cancelled else ExportStatus.COMPLETED
        self.notifier.on_complete(cancelled)
        return self.status

    def _make_output_dir(self, names: Sequence[str]) -> Optional[str]:
        """Create the first directory of ``names`` that the filesystem accepts."""

        for name in names:
            try:
                os.makedirs(os.path.join(self.output_dir, name), exist_ok=True)
            except OSError as exc:
                logger.warning("Can't create directory %s: %s", name, exc)
                continue
            return name
        return None

    def _export_account(self, export: _Pass, account: Account, name: str) -> Optional[str]:
        output_name = self._make_output_dir([name, account.usr_hash])
        if output_name is None:
            return None
        output_base = os.path.join(self.output_dir, output_name)
        os.makedirs(export.state.account_dir(account.usr_hash), exist_ok=True)
        logger.info("Handling account: %s, Wechat Id: %s", account.display_name, account.usr_hash)
        logger.info("%d chats found.", len(account.conversations))

        wanted = self.selection.get(account.usr_hash) if self.selection is not None else None
        ext = export.options.ext_name
        task_manager = self.task_manager_factory()
        items = []
        used: FrozenSet[str] = frozenset()
        try:
            total = len(account.conversations)
            for position, conversation in enumerate(account.conversations, 1):
                if self.cancelled:
                    break
                if wanted is not None and conversation.usr_name not in wanted:
                    continue

                self.notifier.on_session_start(conversation.usr_name, conversation.record_count)
                conv_name, used = choose_output_name(
                    [conversation.display_name, conversation.usr_name, conversation.hash], used
                )
                if conv_name is None:
                    logger.warning("Can't build file name for chat: %s. Skip it.", conversation.display_name)
                    self.notifier.on_session_complete(conversation.usr_name, self.cancelled)
                    continue
                logger.info("%d/%d: Handling the chat with %s", position, total, conversation.display_name)
                if conversation.is_subscription:
                    logger.info("Skip subscription: %s", conversation.display_name)
                    self.notifier.on_session_complete(conversation.usr_name, self.cancelled)
                    continue

                try:
                    count = self._export_conversation(
                        export, account, conversation, conv_name, output_base, task_manager
                    )
                    logger.info("Succeeded handling %d messages.", count)
                except Exception:
                    logger.exception("Failed to export chat %s", conversation.display_name)

                if os.path.exists(os.path.join(output_base, f"{conv_name}.{ext}")):
                    items.append({"link": f"{quote(conv_name)}.{ext}", "text": conversation.display_name})
                self.notifier.on_session_complete(conversation.usr_name, self.cancelled)

            Path(output_base, f"index.{ext}").write_text(
                export.templates.list_frame(account.display_name, items), encoding="utf-8"
            )
        finally:
            self._drain_tasks(account, task_manager)
        return output_name

    def _drain_tasks(self, account: Account, task_manager: TaskManager) -> None:
        if self.cancelled:
            task_manager.cancel_all()
        total, description = task_manager.outstanding()
        if total > 0:
            logger.info("Waiting for tasks: %s", description)
        self.notifier.on_tasks_start(account.usr_hash, total)

        remaining = total
        poll = 0
        while not task_manager.wait_until_drained(TASK_POLL_INTERVAL):
            poll += 1
            if self.cancelled:
                task_manager.cancel_all()
            elif poll % 2 == 0:
                current, _ = task_manager.outstanding()
                if current != remaining:
                    self.notifier.on_tasks_progress(account.usr_hash, total - current, total)
                    remaining = current
        if remaining != 0:
            self.notifier.on_tasks_progress(account.usr_hash, total, total)
        task_manager.shutdown()
        self.notifier.on_tasks_complete(account.usr_hash, self.cancelled)

    def _export_conversation(
        self,
        export: _Pass,
        account: Account,
        conversation: Conversation,
        name: str,
        output_base: str,
        task_manager: TaskManager,
    ) -> int:
        options = export.options
        key = export.catalog.conversation_key(conversation)
        min_id = export.context.get_max_id(key)
        files_dir = os.path.join(output_base, f"{name}_files")
        context = ConversationContext(
            account=account,
            conversation=conversation,
            index=export.index,
            shared_index=export.shared_index,
            output_dir=output_base,
            files_dir=files_dir,
            task_manager=task_manager,
            options=options,
        )

        fragments: List[bytes] = []
        with open_enumerator(export.index, conversation, min_id) as enumerator:
            for record in enumerator:
                values = self.renderer.render(record, context)
                fragments.append(export.templates.build_fragment(values))
                self.notifier.on_session_progress(
                    conversation.usr_name, len(fragments), conversation.record_count
                )
                if self.cancelled:
                    break
            max_id = enumerator.max_id
        count = len(fragments)

        if options.descending:
            fragments.reverse()
        log_path = export.state.fragments_path(account.usr_hash, conversation.hash)
        # a conversation without a stored mark starts over
        if options.incremental and min_id > 0:
            fragments = merge_fragments(read_fragments(log_path), fragments, options.descending)
        write_fragments(log_path, fragments)
        export.context.set_max_id(key, max_id)

        if count > 0 and fragments:
            page_path = self._write_pages(export, conversation, name, output_base, files_dir, fragments)
            if options.pdf_mode:
                pdf_path = os.path.join(
                    self.output_dir, "pdf", os.path.basename(output_base), f"{name}.pdf"
                )
                task_manager.submit(PdfConversionTask(page_path, pdf_path), "pdf")
        return count

    def _write_pages(
        self,
        export: _Pass,
        conversation: Conversation,
        name: str,
        output_base: str,
        files_dir: str,
        fragments: Sequence[bytes],
    ) -> str:
        options = export.options
        inline, pages = paginate(fragments, options.page_size, options.single_page)
        html = export.templates.frame(
            display_name=conversation.display_name,
            body="".join(f.decode("utf-8", "replace") for f in inline),
            page_size=options.page_size,
            number_of_msgs=sum(len(page) for page in pages),
            number_of_pages=len(pages),
            data_path=f"{quote(name + '_files')}/Data",
            loading_type="onscroll" if options.loading_data_on_scroll else "initial",
            support_filter=options.support_filter,
        )
        page_path = os.path.join(output_base, f"{name}.{options.ext_name}")
        Path(page_path).write_text(html, encoding="utf-8")

        data_dir = os.path.join(files_dir, "Data")
        if pages:
            os.makedirs(data_dir, exist_ok=True)
            for number, page in enumerate(pages, 1):
                json_data = json.dumps(
                    [f.decode("utf-8", "replace") for f in page],
                    ensure_ascii=False,
                    separators=(",", ":"),
                )
                Path(data_dir, f"msg-{number}.js").write_text(
                    export.templates.data_chunk(json_data), encoding="utf-8"
                )
        if os.path.isdir(data_dir):
            for entry in os.listdir(data_dir):
                match = _DATA_CHUNK_RE.match(entry)
                if match and int(match.group(1)) > len(pages):
                    os.remove(os.path.join(data_dir, entry))
        return page_path
