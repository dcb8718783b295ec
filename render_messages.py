"""Turn chat records into display fragments.

A renderer maps one record to a list of ``(template name, values)`` pairs;
:class:`TemplateSet` renders each pair with Jinja2 and the exporter stores
the concatenated result as the record's fragment.  Decoding of rich message
types (images, voice, cards, ...) belongs to custom renderers; the default
:class:`MessageRenderer` shows the text of every message.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape
from markupsafe import Markup

from chat_records import SYSTEM_MESSAGE_TYPE, Account, ChatRecord, Conversation
from export_state import ExportOptions
from itunes_index import ITunesDb
from task_manager import CopyFileTask, TaskManager

logger = logging.getLogger(__name__)

SELF_LABEL = "Me"
IMAGE_MESSAGE_TYPE = 3
IMAGE_LABEL = "[Image]"

TemplateValues = Tuple[str, Dict[str, str]]


@dataclass
class ConversationContext:
    """Everything a renderer may need while rendering one conversation."""

    account: Account
    conversation: Conversation
    index: ITunesDb
    shared_index: Optional[ITunesDb]
    output_dir: str
    files_dir: str
    task_manager: TaskManager
    options: ExportOptions


def format_time(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return str(ts)


def split_group_sender(content: str) -> Tuple[Optional[str], str]:
    """Split the ``"<sender>:\\n<text>"`` prefix of incoming group messages."""

    head, sep, tail = content.partition(":\n")
    if sep and head and " " not in head and "\n" not in head:
        return head, tail
    return None, content


class MessageRenderer:
    def copy_image(self, record: ChatRecord, context: ConversationContext) -> str:
        """Queue a copy of the picture of ``record`` and return its page-relative link.

        Pictures go to ``<chat>_files/Img`` when files are kept per chat and to
        the account wide ``Img/<chat hash>`` folder otherwise.  An empty string
        is returned when the backup holds no picture for the record.
        """

        conversation = context.conversation
        vpath = f"{context.account.base_path}/Img/{conversation.hash}/{record.record_id}.pic"
        if context.index.find_file(vpath) is None:
            return ""
        if context.options.files_in_session_folder:
            dest = os.path.join(context.files_dir, "Img", f"{record.record_id}.jpg")
        else:
            dest = os.path.join(context.output_dir, "Img", conversation.hash, f"{record.record_id}.jpg")
        context.task_manager.submit(CopyFileTask(context.index, vpath, dest), "copy")
        return os.path.relpath(dest, context.output_dir).replace(os.sep, "/")

    def render(self, record: ChatRecord, context: ConversationContext) -> List[TemplateValues]:
        time_str = format_time(record.create_time)
        if record.msg_type == SYSTEM_MESSAGE_TYPE:
            return [("system", {"time": time_str, "text": record.content})]

        text = record.content
        if record.outgoing:
            sender = SELF_LABEL
        else:
            sender = context.conversation.display_name
            if context.conversation.usr_name.endswith("@chatroom"):
                member, text = split_group_sender(record.content)
                sender = member or sender
        img_src = ""
        if record.msg_type == IMAGE_MESSAGE_TYPE:
            img_src = self.copy_image(record, context)
            text = IMAGE_LABEL
        return [
            (
                "msg",
                {
                    "msg_id": str(record.record_id),
                    "msg_type": str(record.msg_type),
                    "alignment": "right" if record.outgoing else "left",
                    "sender": sender,
                    "time": time_str,
                    "text": text,
                    "img_src": img_src,
                },
            )
        ]


class TemplateSet:
    """Jinja2 templates of one output flavour (``templates`` or ``templates_txt``)."""

    def __init__(self, template_dir: str, ext_name: str = "html") -> None:
        self.template_dir = Path(template_dir)
        self.ext_name = ext_name
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir), encoding="utf-8"),
            autoescape=select_autoescape(["html", "xml"]),
            keep_trailing_newline=True,
        )

    @property
    def is_html(self) -> bool:
        return self.ext_name == "html"

    def _markup(self, text: str):
        return Markup(text) if self.is_html else text

    def build(self, name: str, values: Dict[str, str]) -> str:
        try:
            template = self.env.get_template(f"{name}.{self.ext_name}")
        except TemplateNotFound:
            logger.warning("Template %s not found in %s", name, self.template_dir)
            return ""
        return template.render(**values)

    def build_fragment(self, values: Sequence[TemplateValues]) -> bytes:
        return "".join(self.build(name, tv) for name, tv in values).encode("utf-8")

    def frame(self, **values) -> str:
        values["body"] = self._markup(values.get("body", ""))
        return self.env.get_template(f"frame.{self.ext_name}").render(**values)

    def list_frame(self, title: str, items: Sequence[Dict[str, str]]) -> str:
        return self.env.get_template(f"listframe.{self.ext_name}").render(title=title, items=items)

    def data_chunk(self, json_data: str) -> str:
        return self.env.get_template("scripts.js").render(json_data=json_data)
