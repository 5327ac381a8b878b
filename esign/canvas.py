# Page canvas over pypdf + reportlab.
# Drawing operations are queued per page and painted as a single reportlab
# overlay merged onto the page when the document is serialized.

from io import BytesIO
from typing import Dict, List, Tuple

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import Color
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import RenderError

BLACK = (0, 0, 0)
GREY = (0.5, 0.5, 0.5)
DARK_GREY = (0.2, 0.2, 0.2)


def _new_canvas(buf: BytesIO, width: float, height: float) -> canvas.Canvas:
    # invariant=1 drops creation dates and random ids so output is reproducible
    return canvas.Canvas(buf, pagesize=(width, height), invariant=1)


def _overlay_page(width, height, draw_ops) -> bytes:
    buf = BytesIO()
    c = _new_canvas(buf, width, height)
    for op in draw_ops:
        t = op["type"]
        if t == "text":
            c.setFillColor(Color(*op["color"]))
            c.setFont(op["font"], op["size"])
            c.drawString(op["x"], op["y"], op["text"])
        elif t == "rule":
            c.setFillColor(Color(*op["color"]))
            c.rect(op["x"], op["y"], op["w"], op["h"], stroke=0, fill=1)
        elif t == "image":
            c.drawImage(op["image"], op["x"], op["y"], width=op["w"], height=op["h"], mask="auto")
    c.showPage()
    c.save()
    return buf.getvalue()


def read_image(png: bytes) -> ImageReader:
    """Decode PNG bytes up front so a bad payload fails before drawing."""
    try:
        image = ImageReader(BytesIO(png))
        image.getSize()
    except (OSError, ValueError) as exc:
        raise RenderError("Signature image could not be decoded") from exc
    return image


class PdfCanvas:
    def __init__(self, reader: PdfReader):
        self._writer = PdfWriter()
        for page in reader.pages:
            self._writer.add_page(page)
        self._ops: Dict[int, List[dict]] = {}

    @property
    def page_count(self) -> int:
        return len(self._writer.pages)

    def page_size(self, index: int) -> Tuple[float, float]:
        try:
            box = self._writer.pages[index].mediabox
        except IndexError as exc:
            raise RenderError(f"Page {index + 1} does not exist") from exc
        return float(box.width), float(box.height)

    def page_index(self, page_number: int) -> int:
        """1-based page number to a valid index, clamped to the document."""
        return max(0, min(self.page_count - 1, int(page_number or 1) - 1))

    def last_page(self) -> int:
        if self.page_count == 0:
            self._writer.add_blank_page(width=letter[0], height=letter[1])
        return self.page_count - 1

    def embed_image(self, index: int, x: float, y: float, width: float, height: float, image) -> None:
        if isinstance(image, bytes):
            image = read_image(image)
        self._ops.setdefault(index, []).append({"type": "image", "x": x, "y": y, "w": width, "h": height, "image": image})

    def draw_text(self, index: int, x: float, y: float, text: str, size: float = 10, font: str = "Helvetica", color=BLACK) -> None:
        self._ops.setdefault(index, []).append(
            {"type": "text", "x": x, "y": y, "text": text, "size": size, "font": font, "color": color}
        )

    def draw_rule(self, index: int, x: float, y: float, width: float, height: float = 1, color=DARK_GREY) -> None:
        self._ops.setdefault(index, []).append({"type": "rule", "x": x, "y": y, "w": width, "h": height, "color": color})

    def serialize(self) -> bytes:
        try:
            for index, ops in sorted(self._ops.items()):
                width, height = self.page_size(index)
                overlay = PdfReader(BytesIO(_overlay_page(width, height, ops)))
                self._writer.pages[index].merge_page(overlay.pages[0])
            out = BytesIO()
            self._writer.write(out)
        except (PyPdfError, ValueError, KeyError, TypeError, IndexError) as exc:
            raise RenderError("Document could not be rendered") from exc
        finally:
            self._ops = {}
        return out.getvalue()


def load_document(data: bytes) -> PdfCanvas:
    try:
        reader = PdfReader(BytesIO(data))
        # page tree is parsed lazily; touch it so broken files fail here
        pages = len(reader.pages)
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as exc:
        raise RenderError("Source document could not be parsed") from exc
    if pages == 0:
        raise RenderError("Source document has no pages")
    return PdfCanvas(reader)


def placeholder_document(notice: str) -> PdfCanvas:
    buf = BytesIO()
    width, height = letter
    c = _new_canvas(buf, width, height)
    c.setFont("Helvetica-Bold", 12)
    c.drawString(50, height - 60, notice)
    c.showPage()
    c.save()
    return PdfCanvas(PdfReader(BytesIO(buf.getvalue())))
