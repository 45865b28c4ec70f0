from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import tempfile
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .errors import ConfigurationError, OcrError
from .models import OcrResult
from .storage import LocalBlobStorage

logger = logging.getLogger(__name__)

OCR_TIMEOUT_SECONDS = 120.0

_IMAGE_PLACEHOLDER = "<!-- image -->"

LAYOUT_OCR_PROMPT = """Please output the layout information from the PDF image, including each layout element's bbox, its category, and the corresponding text content within the bbox.

1. Bbox format: [x1, y1, x2, y2]

2. Layout Categories: ['Caption', 'Footnote', 'Formula', 'List-item', 'Page-footer', 'Page-header', 'Picture', 'Section-header', 'Table', 'Text', 'Title'].

3. Text Extraction & Formatting Rules:
    - Picture: Omit text field
    - Formula: Format as LaTeX
    - Table: Format as HTML
    - Others: Format as Markdown

4. Constraints:
    - Output original text with no translation
    - Sort all layout elements by reading order

5. Final Output: Single JSON object"""


class OcrService(Protocol):
    async def extract(self, file_location: str, owner_id: str) -> OcrResult:
        ...


def layout_to_markdown(elements: List[Dict[str, Any]]) -> Tuple[str, List[str]]:
    """
    Render layout elements (in reading order) as markdown. Pictures carry no
    text, so they are returned as bbox-derived references instead.
    """
    parts: List[str] = []
    images: List[str] = []
    for element in elements:
        category = element.get("category")
        text = element.get("text") or ""
        if category == "Title":
            parts.append(f"# {text}")
        elif category == "Section-header":
            parts.append(f"## {text}")
        elif category == "List-item":
            parts.append(f"- {text}")
        elif category == "Formula":
            parts.append(f"$$\n{text}\n$$")
        elif category == "Caption":
            parts.append(f"*{text}*")
        elif category == "Footnote":
            parts.append(f"> {text}")
        elif category == "Picture":
            bbox = element.get("bbox") or []
            images.append("picture_bbox_" + "_".join(str(v) for v in bbox))
        elif category in ("Page-header", "Page-footer"):
            continue
        elif category in ("Text", "Table") or text:
            parts.append(text)
    return "\n\n".join(parts), images


def detect_mime_type(content_type: Optional[str], url: str) -> str:
    content_type = (content_type or "").lower()
    for known in ("image/png", "image/webp", "image/gif", "application/pdf"):
        if known in content_type:
            return known
    if "image/jpeg" in content_type or "image/jpg" in content_type:
        return "image/jpeg"

    ext = url.split("?")[0].rsplit(".", 1)[-1].lower()
    if ext == "png":
        return "image/png"
    if ext == "webp":
        return "image/webp"
    if ext == "pdf":
        return "application/pdf"
    return "image/jpeg"


def parse_layout_response(content: str) -> OcrResult:
    """
    The model answers with a JSON object (optionally fenced). Anything that is
    not a list of layout elements is kept verbatim as markdown.
    """
    stripped = re.sub(r"^```json\s*\n?", "", content.strip())
    stripped = re.sub(r"\n?```\s*$", "", stripped).strip()
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return OcrResult(markdown=content, images=[])
    elements = parsed.get("layout_elements", parsed) if isinstance(parsed, dict) else parsed
    if isinstance(elements, list):
        markdown, images = layout_to_markdown([e for e in elements if isinstance(e, dict)])
        return OcrResult(markdown=markdown, images=images)
    return OcrResult(markdown=content, images=[])


class HuggingFaceOcrService:
    """
    Layout OCR served by an OpenAI-compatible inference endpoint. The file is
    fetched, inlined as a data URI, and the layout JSON rendered as markdown.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout: float = OCR_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not endpoint or not api_key:
            raise ConfigurationError("Hugging Face OCR endpoint or API key not configured")
        self.api_url = endpoint.rstrip("/") + "/v1/chat/completions"
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def extract(self, file_location: str, owner_id: str) -> OcrResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await asyncio.wait_for(self._extract(client, file_location), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise OcrError(f"OCR timed out after {int(self.timeout)} seconds") from exc
        except httpx.HTTPError as exc:
            raise OcrError(f"OCR request failed: {exc}") from exc

    async def _extract(self, client: httpx.AsyncClient, file_location: str) -> OcrResult:
        file_response = await client.get(file_location)
        if file_response.status_code >= 400:
            raise OcrError(f"Failed to fetch file from {file_location}")
        mime_type = detect_mime_type(file_response.headers.get("content-type"), file_location)
        data_uri = f"data:{mime_type};base64,{base64.b64encode(file_response.content).decode('ascii')}"

        response = await client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": "tgi",
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": data_uri}},
                            {"type": "text", "text": LAYOUT_OCR_PROMPT},
                        ],
                    }
                ],
                "max_tokens": 24000,
                "stream": False,
            },
        )
        if response.status_code >= 400:
            raise OcrError(f"OCR failed ({response.status_code}): {response.text}")

        body = response.json()
        choices = body.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        return parse_layout_response(content)


class DoclingOcrService:
    """
    Local OCR through Docling's PDF pipeline. Pictures found in the document
    are stored in blob storage and referenced inline from the markdown.

    Requires the `docling` package and its dependencies to be installed.
    """

    def __init__(
        self,
        storage: LocalBlobStorage,
        perform_ocr: bool = True,
        timeout: float = OCR_TIMEOUT_SECONDS,
        num_threads: int = 8,
    ):
        from docling.datamodel.accelerator_options import AcceleratorDevice, AcceleratorOptions
        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import PdfPipelineOptions, RapidOcrOptions
        from docling.document_converter import DocumentConverter, PdfFormatOption

        self.storage = storage
        self.timeout = timeout

        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_ocr = perform_ocr
        pipeline_options.do_table_structure = True
        pipeline_options.generate_picture_images = True
        pipeline_options.images_scale = 2.0
        pipeline_options.ocr_options = RapidOcrOptions()
        pipeline_options.accelerator_options = AcceleratorOptions(num_threads=num_threads, device=AcceleratorDevice.AUTO)

        self.converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            }
        )

    async def extract(self, file_location: str, owner_id: str) -> OcrResult:
        local_path = self.storage.resolve(file_location)
        if local_path is None:
            return await self._extract_remote(file_location, owner_id)
        return await self._convert_with_timeout(local_path, owner_id)

    async def _extract_remote(self, file_location: str, owner_id: str) -> OcrResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(file_location)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OcrError(f"Failed to fetch file from {file_location}") from exc

        suffix = Path(file_location.split("?")[0]).suffix or ".pdf"
        with tempfile.TemporaryDirectory() as tmp_dir:
            tmp_path = Path(tmp_dir) / f"source{suffix}"
            tmp_path.write_bytes(response.content)
            return await self._convert_with_timeout(tmp_path, owner_id)

    async def _convert_with_timeout(self, path: Path, owner_id: str) -> OcrResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._convert, path, owner_id), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise OcrError(f"OCR timed out after {int(self.timeout)} seconds") from exc

    def _convert(self, path: Path, owner_id: str) -> OcrResult:
        from docling_core.types.doc.document import PictureItem

        try:
            result = self.converter.convert(path)
            doc = result.document
        except Exception as exc:
            raise OcrError(f"Docling conversion failed for {path.name}: {exc}") from exc

        image_refs: List[Optional[str]] = []
        for item, _level in doc.iterate_items(traverse_pictures=True):
            if not isinstance(item, PictureItem):
                continue
            png = self._image_to_png_bytes(item.get_image(doc))
            if png is None:
                image_refs.append(None)
                continue
            key = self.storage.paths.image_key(owner_id, f"{path.stem}-img{len(image_refs)}.png")
            image_refs.append(self.storage.put(key, png))

        markdown = doc.export_to_markdown(image_placeholder=_IMAGE_PLACEHOLDER)
        markdown = self._inline_images(markdown, image_refs)
        images = [ref for ref in image_refs if ref]
        logger.info("Docling extracted %s chars and %s image(s) from %s", len(markdown), len(images), path.name)
        return OcrResult(markdown=markdown, images=images)

    def _inline_images(self, markdown: str, image_refs: List[Optional[str]]) -> str:
        refs = iter(image_refs)

        def replace(_match: re.Match) -> str:
            ref = next(refs, None)
            return f"![Figure]({ref})" if ref else ""

        return re.sub(re.escape(_IMAGE_PLACEHOLDER), replace, markdown)

    def _image_to_png_bytes(self, image) -> Optional[bytes]:
        if image is None:
            return None
        buffer = BytesIO()
        try:
            image.save(buffer, format="PNG")
        except Exception:
            logger.warning("Could not encode extracted picture as PNG", exc_info=True)
            return None
        return buffer.getvalue()
