import pytest

from elastic_document.processing import ClaimCoordinator, InMemoryJobRepository, JobProcessor

from fakes import FakeGenerator, FakeOcr, FakeScraper


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def repo():
    return InMemoryJobRepository()


@pytest.fixture
def ocr():
    return FakeOcr()


@pytest.fixture
def scraper():
    return FakeScraper()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def processor(repo, ocr, scraper, generator):
    return JobProcessor(
        repository=repo,
        claims=ClaimCoordinator(repo),
        ocr=ocr,
        scraper=scraper,
        generator=generator,
    )
