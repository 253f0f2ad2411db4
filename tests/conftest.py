"""Shared fixtures: temporary SQLite store, tokenizer and embedding doubles, fake site."""

import hashlib
import re
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from config.settings import CacheSettings, ChunkingConfig, CrawlConfig, EmbeddingsConfig, KnowledgeSettings
from indexer.embeddings import EmbeddingBatch, get_model_dimensions
from indexer.sqlite_adapter import SQLiteAdapter
from pipelines.crawler import FetchResponse
from server.estimate_cache import EstimateCache, MemoryBackend

TOKEN_PATTERN = re.compile(r"\S+|\s+")


class WordTokenizer:
    """Deterministic tokenizer double: every word and every whitespace run is one token."""

    def __init__(self):
        self.vocabulary: List[str] = []
        self.ids: Dict[str, int] = {}

    def encode(self, text: str) -> List[int]:
        tokens = []
        for piece in TOKEN_PATTERN.findall(text or ""):
            if piece not in self.ids:
                self.ids[piece] = len(self.vocabulary)
                self.vocabulary.append(piece)
            tokens.append(self.ids[piece])
        return tokens

    def decode(self, tokens: List[int]) -> str:
        return "".join(self.vocabulary[token] for token in tokens)

    def count(self, text: str) -> int:
        return len(self.encode(text))

    def starts_character(self, token: int) -> bool:
        return True


def bag_of_words_vector(text: str, dimensions: int) -> List[float]:
    """Deterministic embedding: word counts hashed into ``dimensions`` buckets."""
    vector = [0.0] * dimensions
    for word in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    return vector


class FakeEmbeddings:
    """Embedding client double with usage equal to the number of words embedded."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.calls: List[List[str]] = []
        self.fail_with = fail_with

    async def embed_batch_with_usage(self, texts: List[str], model: str) -> EmbeddingBatch:
        dimensions = get_model_dimensions(model)
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        tokens = sum(len(text.split()) for text in texts)
        return EmbeddingBatch(
            vectors=[bag_of_words_vector(text, dimensions) for text in texts],
            prompt_tokens=tokens,
            total_tokens=tokens,
        )

    async def close(self):
        pass


class FakeFetcher:
    """Serves an in-memory site; unknown URLs return 404."""

    def __init__(self, responses: Optional[Dict[str, FetchResponse]] = None):
        self.responses: Dict[str, FetchResponse] = dict(responses or {})
        self.requests: List[str] = []

    def add_html(self, url: str, html: str):
        self.responses[url] = FetchResponse(url=url, status=200, text=html,
                                            content_type="text/html; charset=utf-8")

    def add(self, url: str, status: int = 200, text: str = "", content_type: str = "text/plain",
            final_url: Optional[str] = None):
        self.responses[url] = FetchResponse(url=url, status=status, text=text,
                                            content_type=content_type, final_url=final_url)

    async def fetch(self, url: str) -> FetchResponse:
        self.requests.append(url)
        response = self.responses.get(url)
        if response is None:
            return FetchResponse(url=url, status=404)
        if isinstance(response, Exception):
            raise response
        return response

    def page_requests(self) -> List[str]:
        """Requests other than robots.txt and sitemaps."""
        return [url for url in self.requests if "robots.txt" not in url and "sitemap" not in url]

    async def close(self):
        pass


def html_page(title: str, body: str, links: Optional[List[str]] = None) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a> ' for href in links or [])
    return (
        f"<html><head><title>{title}</title><script>var tracking = 1;</script></head>"
        f"<body><nav>Home | About | Contact</nav>"
        f"<main><h1>{title}</h1><p>{body}</p><p>{anchors}</p></main>"
        f"<footer>Copyright footer text</footer></body></html>"
    )


def paragraph(topic: str, words: int = 60) -> str:
    return " ".join(f"{topic}{i % 7}" for i in range(words))


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def settings():
    return KnowledgeSettings(
        crawl=CrawlConfig(
            max_pages=20,
            max_depth=3,
            concurrency=2,
            min_chars=100,
            enable_sitemap=True,
            respect_robots_txt=True,
        ),
        chunking=ChunkingConfig(chunk_size_tokens=60, chunk_overlap_tokens=10),
        embeddings=EmbeddingsConfig(api_key="test-key", max_retries=3, initial_backoff_ms=1000),
        cache=CacheSettings(estimate_ttl_seconds=600, estimate_sample_pages=5),
    )


@pytest.fixture
def estimate_cache(settings):
    return EstimateCache(settings.cache, MemoryBackend())


@pytest_asyncio.fixture
async def store(tmp_path):
    adapter = SQLiteAdapter(str(tmp_path / "knowledge.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture
async def client_record(store):
    return await store.create_client("Example Co", "example.com", "text-embedding-3-small")


@pytest.fixture
def site():
    """Three same-host pages linked from the home page, one off-site link."""
    fetcher = FakeFetcher()
    fetcher.add("https://example.com/robots.txt", text="User-agent: *\nDisallow: /private\n")
    fetcher.add_html("https://example.com/", html_page(
        "Home", paragraph("home"),
        ["/about", "/pricing", "https://other.org/page", "/private/secret", "/brochure.pdf"],
    ))
    fetcher.add_html("https://example.com/about", html_page("About", paragraph("about"), ["/"]))
    fetcher.add_html("https://example.com/pricing", html_page("Pricing", paragraph("pricing"), ["/about"]))
    return fetcher


class RecordingDispatcher:
    """Records dispatched work instead of scheduling it."""

    def __init__(self):
        self.calls = []

    def dispatch(self, func, *args, job_id=None):
        self.calls.append((func, args, job_id))
        return job_id

    async def run_all(self):
        for func, args, _ in self.calls:
            await func(*args)


async def add_chunk(store, client, text, url="https://example.com/", domain="example.com", index=0):
    """Store ``text`` as a chunk of ``client`` with a bag-of-words embedding."""
    model = client["embedding_model"]
    dimensions = get_model_dimensions(model)
    return await store.upsert_chunk(client["id"], model, domain, url, index, text,
                                    f"hash-{text}", bag_of_words_vector(text, dimensions))
