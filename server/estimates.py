"""Token and cost estimates for crawls and document uploads.

Crawl estimates sample a bounded number of pages, extrapolate the average
embedding tokens per page to the discovered page total, and cache the sampled
pages so a crawl started from the estimate does not fetch them again.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config.settings import KnowledgeSettings
from indexer.chunker import estimate_tokens_for_text
from pipelines.crawler import WebCrawler
from pipelines.extract import DocumentExtractionError, UnsupportedDocumentError, extract_clean_text
from pipelines.html_ingest import ParsedPage
from observability.logging import log_context
from pipelines.urls import extract_domain, normalize_domain_to_start_url
from server.estimate_cache import CACHE_SCHEMA_VERSION, EstimateCache, build_signature

logger = logging.getLogger(__name__)

LOW_FACTOR = 0.8
HIGH_FACTOR = 1.25


@dataclass
class UploadedDocument:
    """A file received through a multipart upload."""
    filename: str
    data: bytes


def page_to_cache(page: ParsedPage) -> Dict[str, Any]:
    return {
        "url": page.url,
        "domain": page.domain,
        "cleanedText": page.cleaned_text,
        "title": page.title,
        "links": list(page.links),
    }


def page_from_cache(data: Dict[str, Any]) -> ParsedPage:
    return ParsedPage(
        url=data["url"],
        domain=data.get("domain", ""),
        cleaned_text=data.get("cleanedText", ""),
        title=data.get("title"),
        links=list(data.get("links") or []),
    )


def too_short_reason(length: int, min_chars: int) -> str:
    return f"Document text too short ({length} chars, min={min_chars})"


def token_range(tokens_estimated: int) -> Dict[str, int]:
    return {
        "tokensLow": math.floor(LOW_FACTOR * tokens_estimated),
        "tokensHigh": math.ceil(HIGH_FACTOR * tokens_estimated),
    }


def estimate_from_meta(meta: Dict[str, Any], cached: bool) -> Dict[str, Any]:
    """Public estimate built from cached metadata."""
    tokens_estimated = int(meta.get("tokensEstimated", 0))
    estimate = {
        "estimateId": meta["estimateId"],
        "domain": meta["domain"],
        "pagesEstimated": int(meta.get("pagesEstimated", 0)),
        "samplePages": int(meta.get("pagesCounted", 0)),
        "avgEmbeddingTokensPerPage": int(meta.get("avgEmbeddingTokensPerPage", 0)),
        "tokensEstimated": tokens_estimated,
        "cached": cached,
    }
    estimate.update(token_range(tokens_estimated))
    return estimate


class EstimateService:
    """Computes crawl and document estimates."""

    def __init__(self,
                 settings: KnowledgeSettings,
                 cache: EstimateCache,
                 crawler_factory: Callable[..., WebCrawler] = WebCrawler,
                 dispatcher=None,
                 tokenizer=None):
        self.settings = settings
        self.cache = cache
        self.crawler_factory = crawler_factory
        self.dispatcher = dispatcher
        self.tokenizer = tokenizer

    async def estimate_crawl(self, domain_input: str) -> Dict[str, Any]:
        """Estimate the embedding tokens a full crawl of ``domain_input`` would use.

        Raises:
            ValueError: if the domain is invalid
        """
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        signature = build_signature(domain, self.settings)

        meta = await self._cached_meta(signature, domain)
        if meta is not None:
            return estimate_from_meta(meta, cached=True)

        return await self._compute_crawl_estimate(str(uuid.uuid4()), domain, start_url, signature)

    async def _cached_meta(self, signature: str, domain: str) -> Optional[Dict[str, Any]]:
        cached = await self.cache.get_by_signature(signature)
        if cached and cached["meta"].get("schemaVersion") == CACHE_SCHEMA_VERSION:
            logger.info(f"Serving cached estimate {cached['meta']['estimateId']} for {domain}")
            return cached["meta"]
        return None

    async def _compute_crawl_estimate(self, estimate_id: str, domain: str, start_url: str,
                                      signature: str) -> Dict[str, Any]:
        crawl_config = self.settings.crawl
        chunking = self.settings.chunking
        sample_cap = self.settings.cache.estimate_sample_pages

        crawler = self.crawler_factory(crawl_config, fetch_limit=sample_cap)
        async with crawler:
            stats = await crawler.crawl(start_url, collect_pages=True)

        pages_counted = 0
        sample_tokens = 0
        for page in stats.pages:
            if len(page.cleaned_text) < crawl_config.min_chars:
                continue
            _, tokens = estimate_tokens_for_text(page.cleaned_text, chunking, tokenizer=self.tokenizer)
            pages_counted += 1
            sample_tokens += tokens

        pages_estimated = max(min(crawl_config.max_pages, stats.discovered), pages_counted)
        avg_tokens = round(sample_tokens / pages_counted) if pages_counted else 0
        tokens_estimated = avg_tokens * pages_estimated

        meta = {
            "estimateId": estimate_id,
            "signature": signature,
            "domain": domain,
            "startUrl": start_url,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "pagesEstimated": pages_estimated,
            "pagesVisited": stats.pages_visited,
            "pagesCounted": pages_counted,
            "avgEmbeddingTokensPerPage": avg_tokens,
            "tokensEstimated": tokens_estimated,
            "schemaVersion": CACHE_SCHEMA_VERSION,
        }
        await self.cache.set({"meta": meta, "pages": [page_to_cache(p) for p in stats.pages]})

        logger.info(f"Estimated {domain}: pages={pages_estimated} sampled={pages_counted} "
                    f"avg_tokens={avg_tokens} tokens={tokens_estimated}")
        return estimate_from_meta(meta, cached=False)

    async def start_crawl_estimate(self, domain_input: str) -> str:
        """Compute an estimate in the background and return its id immediately."""
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        estimate_id = str(uuid.uuid4())

        await self.cache.set_status({
            "estimateId": estimate_id,
            "status": "running",
            "domain": domain,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })
        self.dispatcher.dispatch(self.run_crawl_estimate, estimate_id, domain_input,
                                 job_id=f"estimate-{estimate_id}")
        return estimate_id

    async def run_crawl_estimate(self, estimate_id: str, domain_input: str) -> None:
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        status = {
            "estimateId": estimate_id,
            "domain": domain,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with log_context(estimate_id=estimate_id, domain=domain):
            try:
                signature = build_signature(domain, self.settings)
                meta = await self._cached_meta(signature, domain)
                if meta is None:
                    await self._compute_crawl_estimate(estimate_id, domain, start_url, signature)
                else:
                    # Served by the cached estimate under its own id
                    status["resultEstimateId"] = meta["estimateId"]
                status["status"] = "completed"
            except Exception as e:
                logger.error(f"Estimate {estimate_id} for {domain} failed: {e}")
                status["status"] = "failed"
                status["error"] = str(e) or type(e).__name__
            await self.cache.set_status(status)

    async def get_crawl_estimate_status(self, estimate_id: str) -> Optional[Dict[str, Any]]:
        """Status record of an async estimate, with the estimate once completed."""
        status = await self.cache.get_status(estimate_id)
        if status is None:
            return None
        result = dict(status)
        if status.get("status") == "completed":
            cached = await self.cache.get_by_id(status.get("resultEstimateId") or estimate_id)
            if cached:
                result["estimate"] = estimate_from_meta(cached["meta"], cached=True)
        return result

    def estimate_documents(self, files: List[UploadedDocument]) -> Dict[str, Any]:
        min_chars = self.settings.crawl.min_chars
        results = []
        total_tokens = 0

        for document in files:
            entry: Dict[str, Any] = {
                "fileName": document.filename,
                "chars": 0,
                "chunks": 0,
                "tokensEstimated": 0,
            }
            try:
                text = extract_clean_text(document.data, document.filename)
            except (UnsupportedDocumentError, DocumentExtractionError) as e:
                entry.update(skipped=True, reason=str(e))
                results.append(entry)
                continue

            entry["chars"] = len(text)
            if len(text) < min_chars:
                entry.update(skipped=True, reason=too_short_reason(len(text), min_chars))
                results.append(entry)
                continue

            chunks, tokens = estimate_tokens_for_text(text, self.settings.chunking, tokenizer=self.tokenizer)
            entry["chunks"] = chunks
            entry["tokensEstimated"] = tokens
            total_tokens += tokens
            results.append(entry)

        return {"totalTokensEstimated": total_tokens, "files": results}
