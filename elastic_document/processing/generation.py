from __future__ import annotations

import logging
from typing import AsyncIterator, Optional, Protocol

from anthropic import APIError, AsyncAnthropic

from .errors import GenerationError
from .models import EMPTY_CONTENT_PHRASE, GenerationRequest, OutputVariant

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 16000

EMPTY_CONTENT_REPLY = f"The provided document {EMPTY_CONTENT_PHRASE}."


class GenerationService(Protocol):
    def stream(self, request: GenerationRequest, variant: OutputVariant) -> AsyncIterator[str]:
        ...


def complexity_instruction(complexity: str) -> str:
    if complexity == "very_simple":
        return (
            "Use very simple language that a 10-year-old could understand. Avoid jargon and technical "
            "terms entirely. Use short sentences and common words."
        )
    if complexity == "simple":
        return (
            "Use simple, accessible language. Minimize jargon and explain any technical terms when they "
            "must be used. Keep sentences clear and straightforward."
        )
    if complexity == "standard":
        return (
            "Use standard language appropriate for a general adult audience. Technical terms are "
            "acceptable when relevant, but keep the writing clear and well-organized."
        )
    return "Use simple, accessible language."


def _image_instructions(request: GenerationRequest) -> str:
    if not request.images:
        return ""
    listing = "\n".join(f"- Image {i + 1}: {img}" for i, img in enumerate(request.images))
    return (
        "\n\nThe following images were extracted from the source documents. Include relevant images in "
        "your output using markdown image syntax (![description](url)) where they add value to "
        f"understanding the content:\n{listing}"
    )


def _formatted_rules() -> str:
    return """STRUCTURE & FORMATTING:
- Begin with a concise overview paragraph (2-3 sentences) capturing the document's main thesis or purpose.
- Use clear markdown headings (## for sections, ### for subsections) to organize the content logically.
- Use bullet points for lists of items, key takeaways, or enumerations.
- Use numbered lists only when order matters (steps, rankings, chronological events).
- Preserve any tables from the source in markdown table format if they contain important data. Simplify large tables by keeping only the most relevant rows/columns.
- Preserve code blocks and their language annotations if present in the source.
- Keep direct quotes only if they are essential, and attribute them clearly."""


def _breadtext_rules() -> str:
    return """STRUCTURE & FORMATTING:
- Write continuous plain prose meant to be read one word at a time.
- Do not use markdown of any kind: no headings, bullet points, numbered lists, tables, bold, italics, links, code blocks or images.
- Separate topics with ordinary paragraph breaks only.
- Spell out anything a table or list would have carried as complete sentences."""


def build_prompt(request: GenerationRequest, variant: OutputVariant = OutputVariant.FORMATTED) -> str:
    target_words = request.target_words
    rules = _formatted_rules() if variant == OutputVariant.FORMATTED else _breadtext_rules()
    images = _image_instructions(request) if variant == OutputVariant.FORMATTED else ""

    return f"""You are an expert document summarizer and restructurer. Your job is to take the following document content and rewrite it so a reader can absorb the key information in approximately {request.reading_minutes} minute(s) of reading time (approximately {target_words} words).

CRITICAL CONSTRAINTS:
- Your output must NEVER exceed {target_words} words. This is a hard limit.
- If the original document is already short enough to fit within the time budget, keep your output at approximately the same length. Do not pad, expand, or add filler.
- Write the entire output in {request.language}.
- If the source content is empty or unreadable, reply with exactly: "{EMPTY_CONTENT_REPLY}"

LANGUAGE & TONE:
- {complexity_instruction(request.complexity)}
- Maintain a neutral, informative tone. Do not editorialize or add opinions.
- If the source material uses domain-specific terminology that is essential to understanding, keep those terms but briefly explain them when the complexity level requires it.

{rules}

CONTENT PRIORITIES:
- Preserve key arguments, conclusions, data points, statistics, and actionable information.
- Maintain cause-and-effect relationships and logical flow.
- If the source contains citations or references to specific studies/sources, preserve the most important ones.
- Omit redundant examples, verbose explanations, filler phrases, and tangential content.
- When multiple documents are combined, organize by topic rather than by source document. Do not label sections by source filename.{images}

SOURCE CONTENT:

{request.extracted_text}"""


class AnthropicGenerationService:
    """
    Streams text increments from Claude. Each call is independent, so the
    formatted and breadtext variants can run side by side.
    """

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.client = client or AsyncAnthropic()
        self.model = model
        self.max_tokens = max_tokens

    async def stream(self, request: GenerationRequest, variant: OutputVariant) -> AsyncIterator[str]:
        prompt = build_prompt(request, variant)
        logger.info(
            "Starting %s generation (%s words target, %s chars of source)",
            variant.value,
            request.target_words,
            len(request.extracted_text),
        )
        try:
            async with self.client.messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            ) as stream:
                async for text in stream.text_stream:
                    yield text
        except APIError as exc:
            raise GenerationError(f"Generation request failed: {exc}") from exc
