import pytest

from elastic_document.processing import AnthropicGenerationService, GenerationRequest, OutputVariant
from elastic_document.processing.generation import EMPTY_CONTENT_REPLY, build_prompt, complexity_instruction

REQUEST = GenerationRequest(
    extracted_text="--- a.pdf ---\n\nBody",
    images=["https://files.example/img.png"],
    reading_minutes=2,
    complexity="very_simple",
    language="Spanish",
)


def test_formatted_prompt_lists_images_and_budget():
    prompt = build_prompt(REQUEST, OutputVariant.FORMATTED)
    assert "approximately 460 words" in prompt
    assert "Write the entire output in Spanish." in prompt
    assert complexity_instruction("very_simple") in prompt
    assert "- Image 1: https://files.example/img.png" in prompt
    assert EMPTY_CONTENT_REPLY in prompt
    assert prompt.endswith("Body")


def test_breadtext_prompt_forbids_markdown_and_images():
    prompt = build_prompt(REQUEST, OutputVariant.BREADTEXT)
    assert "Do not use markdown of any kind" in prompt
    assert "Image 1" not in prompt


class _Stream:
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        async def gen():
            for chunk in self.chunks:
                yield chunk

        return gen()


class _Messages:
    def __init__(self):
        self.calls = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return _Stream(["Hola", " mundo"])


class _Client:
    def __init__(self):
        self.messages = _Messages()


@pytest.mark.anyio
async def test_service_streams_text_increments():
    client = _Client()
    service = AnthropicGenerationService(client=client, model="test-model", max_tokens=100)

    chunks = [chunk async for chunk in service.stream(REQUEST, OutputVariant.BREADTEXT)]

    assert chunks == ["Hola", " mundo"]
    call = client.messages.calls[0]
    assert call["model"] == "test-model"
    assert call["max_tokens"] == 100
    assert call["messages"][0]["content"] == build_prompt(REQUEST, OutputVariant.BREADTEXT)
