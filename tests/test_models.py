from elastic_document.processing import EventType, GenerationRequest, OutputVariant, StreamEvent

from fakes import make_job


def test_event_payloads_carry_only_their_fields():
    assert StreamEvent.status("Extracting text and images...").to_payload() == {
        "type": "status",
        "message": "Extracting text and images...",
    }
    assert StreamEvent.chunk(OutputVariant.FORMATTED, "abc").to_payload() == {"type": "formatted_chunk", "text": "abc"}
    assert StreamEvent.chunk(OutputVariant.BREADTEXT, "abc").to_payload() == {"type": "breadtext_chunk", "text": "abc"}
    assert StreamEvent.stream_done(OutputVariant.BREADTEXT).to_payload() == {"type": "breadtext_done"}
    assert StreamEvent.full_content("all").to_payload() == {"type": "content", "text": "all"}
    assert StreamEvent.full_breadtext("all").to_payload() == {"type": "breadtext", "text": "all"}
    assert StreamEvent.error("boom").to_payload() == {"type": "error", "message": "boom"}
    assert StreamEvent.image_set(["a.png"]).to_payload() == {"type": "images", "images": ["a.png"]}
    assert StreamEvent.done().to_payload() == {"type": "done"}


def test_image_set_copies_the_list():
    images = ["a.png"]
    event = StreamEvent.image_set(images)
    images.append("b.png")
    assert event.images == ["a.png"]


def test_only_done_is_terminal():
    assert StreamEvent.done().is_terminal
    assert not StreamEvent.error("x").is_terminal
    assert not StreamEvent.stream_done(OutputVariant.FORMATTED).is_terminal
    assert {event.value for event in EventType} >= {"status", "content", "images", "done"}


def test_generation_request_targets_words_per_minute():
    job = make_job(reading_minutes=3, complexity="standard", language="French")
    request = GenerationRequest.from_job(job, "text", ["img"])
    assert request.target_words == 690
    assert request.language == "French"
    assert request.images == ["img"]


def test_job_is_complete_once_formatted_output_exists():
    job = make_job()
    assert not job.is_complete
    job.formatted_output = "# Done"
    assert job.is_complete
