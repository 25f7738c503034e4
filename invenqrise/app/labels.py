import io
from typing import Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont


def qr_image(data: str, *, box_size: int = 10, border: int = 4) -> Image.Image:
    qr = qrcode.QRCode(version=None, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").convert("RGB")


def qr_label_png(data: str, caption: Optional[str] = None, subcaption: Optional[str] = None) -> bytes:
    """
    Shelf label: the QR code with up to two caption lines (name, price) beneath it.
    The QR payload is the product barcode text the scanners decode.
    """
    code = qr_image(data)
    lines = [t for t in (caption, subcaption) if t]
    if not lines:
        out = io.BytesIO()
        code.save(out, format="PNG")
        return out.getvalue()

    font = ImageFont.load_default()
    line_h = 16
    pad = 8
    label = Image.new("RGB", (code.width, code.height + pad + line_h * len(lines)), "white")
    label.paste(code, (0, 0))
    draw = ImageDraw.Draw(label)
    y = code.height
    for text in lines:
        if not isinstance(font, ImageFont.FreeTypeFont):
            # The bitmap fallback font only covers Latin-1.
            text = text.encode("latin-1", "replace").decode("latin-1")
        # Keep the caption inside the label width.
        while text and draw.textlength(text, font=font) > code.width - 2 * pad:
            text = text[:-1]
        w = draw.textlength(text, font=font)
        draw.text(((code.width - w) / 2, y), text, fill="black", font=font)
        y += line_h
    out = io.BytesIO()
    label.save(out, format="PNG")
    return out.getvalue()
