import re

from PIL import Image

import html_pdf
from html_pdf import PDF, PdfConversionTask, _normalize_image, inline_css, rewrite_img_srcs_in_html


def test_inline_css_handles_multiple_classes():
    html = """
    <html><head><style>
    .meta { color: #555; }
    .date { font-size: 10px; }
    .meta.date { font-weight: bold; }
    </style></head><body>
    <div class="meta date">Hello</div>
    </body></html>
    """
    out = inline_css(html)
    match = re.search(r'style="([^"]+)"', out)
    assert match, out
    styles = match.group(1).replace(" ", "")
    assert "color:#555" in styles
    assert "font-size:10px" in styles
    assert "font-weight:bold" in styles
    assert "<body" not in out


def test_normalize_image_keeps_png(tmp_path):
    src = tmp_path / "image.png"
    Image.new("RGB", (1, 1)).save(src, format="PNG")
    assert _normalize_image(str(src)) == str(src)


def test_normalize_image_failure(tmp_path):
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"not an image")
    assert _normalize_image(str(bad)) is None
    assert _normalize_image(str(tmp_path / "missing.png")) is None


def test_rewrite_img_srcs_converts_gif(tmp_path):
    src = tmp_path / "anim.gif"
    Image.new("RGB", (1, 1)).save(src, format="GIF")
    pdf = PDF()
    out = rewrite_img_srcs_in_html('<img src="anim.gif"><img src="gone.png">', tmp_path, pdf)
    assert "anim.gif" not in out
    assert out.endswith("[Unsupported image]")
    [converted] = pdf._tmp_images
    assert converted.endswith(".png")
    pdf.cleanup()
    assert pdf._tmp_images == []


def test_convert_html_to_pdf(tmp_path):
    page = tmp_path / "Bob.html"
    page.write_text(
        "<html><head><title>Bob</title></head><body>"
        "<h1>Bob</h1><p>Hello \u4f60\u597d</p><script>appendMessages([]);</script>"
        "</body></html>",
        encoding="utf-8",
    )
    target = tmp_path / "pdf" / "Bob.pdf"
    PdfConversionTask(str(page), str(target))()
    assert target.read_bytes().startswith(b"%PDF")


def test_latin1_replacement():
    assert html_pdf._ensure_latin1("caf\u00e9 \u4f60") == "caf\u00e9 ?"
