"""Convert exported chat pages to PDF.

The exported HTML relies on stylesheets and browser-side scripts, neither of
which :mod:`fpdf` understands.  Styles are inlined with :mod:`premailer`,
scripts are dropped and images are converted to formats the PDF writer can
embed before the page is handed to ``FPDF.write_html``.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from fpdf import FPDF
from PIL import Image
from premailer import transform

logger = logging.getLogger(__name__)

_IMG_TAG_RE = re.compile(r"<img\s+[^>]*src=['\"]([^'\"]+)['\"][^>]*>", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)


def _ensure_latin1(text: str) -> str:
    """Return ``text`` limited to latin-1 characters.

    The core PDF fonts only cover latin-1; anything else (emoji, CJK) is
    replaced with ``?`` so the conversion does not abort.
    """

    return text.encode("latin-1", "replace").decode("latin-1")


def _normalize_image(path: str) -> Optional[str]:
    """Return a path to ``path`` converted to a PDF-compatible image.

    ``None`` is returned when ``path`` is not a readable image.  PNG and JPEG
    files with a matching extension are returned unchanged, everything else is
    converted to a temporary PNG/JPEG file.
    """

    if not os.path.exists(path):
        logger.warning("Image %s does not exist", path)
        return None
    try:
        with Image.open(path) as img:
            fmt = (img.format or "").upper()
            ext = Path(path).suffix.lower()
            if fmt in {"PNG", "JPEG", "JPG"} and ext in {".png", ".jpg", ".jpeg"}:
                return path

            suffix = ".jpg" if fmt in {"JPEG", "JPG"} else ".png"
            tmp = tempfile.NamedTemporaryFile(suffix=suffix, delete=False)
            tmp.close()
            out_fmt = "JPEG" if suffix == ".jpg" else "PNG"
            img.save(tmp.name, format=out_fmt)
            logger.debug("Converted %s to %s", path, tmp.name)
            return tmp.name
    except OSError:
        logger.warning("Unsupported image %s", path)
        return None


class PDF(FPDF):
    """FPDF document that keeps track of converted temporary images."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._tmp_images: List[str] = []

    def cleanup(self) -> None:
        for fp in self._tmp_images:
            try:
                os.remove(fp)
            except OSError:
                pass
        self._tmp_images.clear()


def rewrite_img_srcs_in_html(html: str, base_dir: Path, pdf: PDF) -> str:
    """Point ``<img src>`` at PDF-compatible files below ``base_dir``.

    Images that cannot be read are replaced with a short placeholder.
    """

    def repl(match: re.Match) -> str:
        src = match.group(1)
        path = src if os.path.isabs(src) else str(base_dir / src)
        new_src = _normalize_image(path)
        if not new_src:
            return "[Unsupported image]"
        if new_src != path:
            pdf._tmp_images.append(new_src)
        return match.group(0).replace(src, new_src)

    return _IMG_TAG_RE.sub(repl, html)


def inline_css(html: str, base_path: Optional[Path] = None) -> str:
    """Inline CSS rules and return only the body content of ``html``.

    ``base_path`` is the directory linked stylesheets are resolved against;
    :func:`premailer.transform` needs it as a ``file://`` URL with a
    trailing slash.
    """

    base_url = (
        base_path.resolve().as_uri().rstrip("/") + "/" if base_path else None
    )
    inlined = transform(html, base_url=base_url)
    body_match = re.search(r"<body[^>]*>(.*)</body>", inlined, re.DOTALL | re.IGNORECASE)
    return body_match.group(1) if body_match else inlined


def convert_html_to_pdf(html_path: str, pdf_path: str) -> None:
    """Render the exported page ``html_path`` into ``pdf_path``."""

    base_dir = Path(html_path).parent
    html = Path(html_path).read_text(encoding="utf-8")
    html = _SCRIPT_RE.sub("", html)
    html = inline_css(html, base_dir)

    pdf = PDF()
    try:
        html = rewrite_img_srcs_in_html(html, base_dir, pdf)
        html = _ensure_latin1(html)
        pdf.set_auto_page_break(auto=True, margin=15)
        pdf.add_page()
        pdf.set_font("helvetica", size=12)
        pdf.write_html(html)
        os.makedirs(os.path.dirname(pdf_path) or ".", exist_ok=True)
        pdf.output(pdf_path)
    finally:
        pdf.cleanup()
    logger.info("Converted %s to %s", html_path, pdf_path)


class PdfConversionTask:
    """Unit of work converting one exported conversation to PDF."""

    def __init__(self, html_path: str, pdf_path: str) -> None:
        self.html_path = html_path
        self.pdf_path = pdf_path

    def __call__(self) -> None:
        convert_html_to_pdf(self.html_path, self.pdf_path)
