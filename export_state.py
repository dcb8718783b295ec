"""Persisted state that lets later export passes resume.

The output directory holds a hidden ``.chatexp`` folder with

* ``context.dat`` -- the options of the pass, its time and the largest
  record id exported per conversation (the high-water mark);
* ``<account>/<conversation>.dat`` -- the rendered fragments of every
  exported record, framed as ``count:uint32`` followed by ``count`` entries of
  ``length:uint32`` + bytes (all integers big-endian).

Broken state never fails a pass: unreadable files are treated as absent and
the affected conversation is exported from scratch.
"""

from __future__ import annotations

import json
import logging
import os
import struct
import tempfile
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

STATE_FOLDER = ".chatexp"
CONTEXT_FILE = "context.dat"

_UINT32 = struct.Struct(">I")

OPT_TEXT_MODE = 0x01
OPT_PDF_MODE = 0x02
OPT_DESC = 0x04
OPT_SYNC_LOADING = 0x08
OPT_INCREMENTAL = 0x10
OPT_SUPPORT_FILTER = 0x20
OPT_FILES_IN_SESSION = 0x40

_OPTION_BITS = (
    ("text_mode", OPT_TEXT_MODE),
    ("pdf_mode", OPT_PDF_MODE),
    ("descending", OPT_DESC),
    ("sync_loading", OPT_SYNC_LOADING),
    ("incremental", OPT_INCREMENTAL),
    ("support_filter", OPT_SUPPORT_FILTER),
    ("files_in_session_folder", OPT_FILES_IN_SESSION),
)


@dataclass(frozen=True)
class ExportOptions:
    """Settings of one export pass."""

    text_mode: bool = False
    pdf_mode: bool = False
    descending: bool = False
    sync_loading: bool = False
    incremental: bool = False
    support_filter: bool = False
    files_in_session_folder: bool = False
    loading_data_on_scroll: bool = False
    page_size: int = 1000
    ext_name: str = "html"
    templates_name: str = "templates"

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")

    @property
    def single_page(self) -> bool:
        return self.text_mode or self.pdf_mode or self.sync_loading

    def to_bits(self) -> int:
        bits = 0
        for name, bit in _OPTION_BITS:
            if getattr(self, name):
                bits |= bit
        return bits

    def with_bits(self, bits: int) -> "ExportOptions":
        """Return a copy whose flag fields are taken from ``bits``.

        The output flavour follows the restored text mode flag.
        """

        restored = replace(self, **{name: bool(bits & bit) for name, bit in _OPTION_BITS})
        if restored.text_mode:
            return replace(restored, ext_name="txt", templates_name="templates_txt")
        return replace(restored, ext_name="html", templates_name="templates")

    @classmethod
    def for_text(cls, **kwargs) -> "ExportOptions":
        return cls(text_mode=True, ext_name="txt", templates_name="templates_txt", **kwargs)


# Fragment log ----------------------------------------------------------------

def encode_fragments(fragments: Sequence[bytes]) -> bytes:
    parts = [_UINT32.pack(len(fragments))]
    for fragment in fragments:
        parts.append(_UINT32.pack(len(fragment)))
        parts.append(bytes(fragment))
    return b"".join(parts)


def decode_fragments(data: bytes) -> List[bytes]:
    """Return the fully readable fragments framed in ``data``."""

    if len(data) < _UINT32.size:
        return []
    (count,) = _UINT32.unpack_from(data, 0)
    offset = _UINT32.size
    fragments: List[bytes] = []
    for _ in range(count):
        if offset + _UINT32.size > len(data):
            break
        (length,) = _UINT32.unpack_from(data, offset)
        offset += _UINT32.size
        if offset + length > len(data):
            break
        fragments.append(data[offset:offset + length])
        offset += length
    return fragments


def _write_atomic(path: str, data: bytes) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except OSError:
        try:
            os.remove(tmp_name)
        except OSError:
            pass
        raise


def write_fragments(path: str, fragments: Sequence[bytes]) -> None:
    """Replace the fragment log at ``path`` with ``fragments``."""

    _write_atomic(path, encode_fragments(fragments))


def read_fragments(path: str) -> List[bytes]:
    try:
        data = Path(path).read_bytes()
    except OSError:
        return []
    fragments = decode_fragments(data)
    logger.debug("Read %d fragments from %s", len(fragments), path)
    return fragments


def merge_fragments(old: Iterable[bytes], new: Iterable[bytes], descending: bool) -> List[bytes]:
    """Combine previously exported fragments with the ones of this pass.

    Oldest-first output keeps the prior fragments in front; newest-first
    output puts the new fragments in front.
    """

    old, new = list(old), list(new)
    return new + old if descending else old + new


# Export context --------------------------------------------------------------

@dataclass
class ExportContext:
    options: int = 0
    export_time: int = 0
    max_ids: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.max_ids)

    def get_max_id(self, key: str) -> int:
        return self.max_ids.get(key, 0)

    def set_max_id(self, key: str, max_id: int) -> None:
        if max_id > self.max_ids.get(key, 0):
            self.max_ids[key] = max_id

    def refresh_export_time(self) -> None:
        self.export_time = int(time.time())

    def serialize(self) -> bytes:
        payload = {
            "options": self.options,
            "exportTime": self.export_time,
            "sessions": [{"key": k, "maxId": v} for k, v in sorted(self.max_ids.items())],
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> Optional["ExportContext"]:
        """Return the context encoded in ``data`` or ``None`` if unusable."""

        if not data:
            return None
        try:
            payload = json.loads(data.decode("utf-8"))
            context = cls(options=int(payload["options"]), export_time=int(payload["exportTime"]))
            for item in payload["sessions"]:
                context.max_ids[str(item["key"])] = int(item["maxId"])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, OverflowError) as exc:
            logger.warning("Ignoring malformed export context: %s", exc)
            return None
        return context


class StateStore:
    """Locations of the incremental state inside an output directory."""

    def __init__(self, output_dir: str) -> None:
        self.base = os.path.join(output_dir, STATE_FOLDER)

    @property
    def context_path(self) -> str:
        return os.path.join(self.base, CONTEXT_FILE)

    def account_dir(self, account: str) -> str:
        return os.path.join(self.base, account)

    def fragments_path(self, account: str, conversation: str) -> str:
        return os.path.join(self.base, account, f"{conversation}.dat")

    def load_context(self) -> Optional[ExportContext]:
        try:
            data = Path(self.context_path).read_bytes()
        except OSError:
            return None
        context = ExportContext.deserialize(data)
        if context is None or len(context) == 0:
            return None
        return context

    def save_context(self, context: ExportContext) -> None:
        _write_atomic(self.context_path, context.serialize())

    def has_previous_export(self) -> Optional[Tuple[int, str]]:
        """Return the options bitset and local time of the previous pass."""

        context = self.load_context()
        if context is None:
            return None
        try:
            when = datetime.fromtimestamp(context.export_time).strftime("%Y-%m-%d %H:%M")
        except (OverflowError, OSError, ValueError):
            logger.warning("Ignoring export context with invalid time %s", context.export_time)
            return None
        return context.options, when
