"""Provider adapters: protocol-level handling for each upstream vendor.

Each adapter translates a ProviderRequest into the vendor's HTTP protocol,
sends it, and returns a ProviderResponse whose answer/citations/urls were
produced by the vendor's parse cascade.

Vendor-specific behaviors:
  - BrightData: asynchronous dataset trigger, snapshot polled until ready
  - Oxylabs: realtime scraper API, Basic auth, source per collector
  - SerpApi: Bing Copilot engine, answer assembled from text blocks
  - DataForSEO: live endpoints (Google AI mode, LLM responses), Basic auth
  - OpenRouter: chat completions against web-enabled models
  - Google Gemini direct: generateContent with search grounding

Adapters never raise for vendor trouble; failures are reported through
``ProviderResponse.status`` so the fallback chain can decide what to do next.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx

from visibility_tracker.gateway.parsing import (
    ParseCascade,
    dig,
    field_text,
    html_text,
    parse_with,
    url_list,
)
from visibility_tracker.gateway.types import (
    CollectorType,
    ProviderName,
    ProviderRequest,
    ProviderResponse,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "US"

_COUNTRY_NAMES = {
    "US": "United States",
    "GB": "United Kingdom",
    "CA": "Canada",
    "AU": "Australia",
    "DE": "Germany",
    "FR": "France",
    "ES": "Spain",
    "IT": "Italy",
    "NL": "Netherlands",
    "IN": "India",
    "JP": "Japan",
    "KR": "South Korea",
    "CN": "China",
    "BR": "Brazil",
    "MX": "Mexico",
}


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters.

    Subclasses implement ``_fetch``: perform the HTTP exchange with the given
    client and fill in the response. Transport and HTTP errors raised from
    ``_fetch`` are classified here.
    """

    provider: ProviderName
    collectors: frozenset[CollectorType] = frozenset()
    cascade: ParseCascade

    def __init__(self, **credentials):
        self.credentials = credentials

    @property
    def is_configured(self) -> bool:
        return True

    def supports(self, collector_type: CollectorType) -> bool:
        return collector_type in self.collectors

    async def send(self, request: ProviderRequest, timeout: float = 60.0) -> ProviderResponse:
        """Send a request to the vendor and return a normalized response."""
        response = self._base_response(request)

        if not self.supports(request.collector_type):
            response.status = ProviderStatus.NOT_CONFIGURED
            response.error_message = (
                f"{self.provider.value} does not serve collector {request.collector_type.value}"
            )
            return response
        if not self.is_configured:
            response.status = ProviderStatus.NOT_CONFIGURED
            response.error_message = f"{self.provider.value} credentials are not configured"
            return response

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                await self._fetch(client, request, response, timeout)
        except httpx.TimeoutException:
            response.status = ProviderStatus.TIMEOUT
            response.error_message = f"{self.provider.value} timeout after {timeout}s"
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            response.error_code = str(code)
            if code == 429:
                response.status = ProviderStatus.RATE_LIMITED
                response.error_message = f"Rate limited by {self.provider.value}"
            elif code in (401, 403):
                response.status = ProviderStatus.AUTH_ERROR
                response.error_message = f"{self.provider.value} rejected credentials ({code})"
            else:
                response.status = ProviderStatus.VENDOR_ERROR
                response.error_message = str(e)
        except httpx.TransportError as e:
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_code = "network"
            response.error_message = f"{self.provider.value} network error: {e}"
        except (ValueError, KeyError, TypeError) as e:
            response.status = ProviderStatus.PARSE_ERROR
            response.error_message = f"Malformed {self.provider.value} payload: {e}"

        response.latency_ms = int((time.monotonic() - start) * 1000)

        if response.status == ProviderStatus.SUCCESS:
            if not response.answer.strip():
                response.status = ProviderStatus.PARSE_ERROR
                response.error_message = f"{self.provider.value} returned no answer text"
            else:
                response.completed_at = datetime.now(timezone.utc)

        return response

    @abstractmethod
    async def _fetch(
        self,
        client: httpx.AsyncClient,
        request: ProviderRequest,
        response: ProviderResponse,
        timeout: float,
    ) -> None: ...

    def _base_response(self, request: ProviderRequest) -> ProviderResponse:
        return ProviderResponse(
            provider=self.provider,
            collector_type=request.collector_type,
            request_id=request.request_id,
            started_at=datetime.now(timezone.utc),
        )

    def _finish(self, response: ProviderResponse, payload: dict) -> None:
        response.apply(parse_with(self.cascade, payload))
        response.status = ProviderStatus.SUCCESS


def _country(request: ProviderRequest) -> str:
    return (request.country or DEFAULT_COUNTRY).upper()


def _language(locale: str) -> str:
    return (locale or "en-US").split("-")[0].lower() or "en"


# ---------------------------------------------------------------------------
# BrightData (asynchronous dataset snapshots)
# ---------------------------------------------------------------------------


def _brightdata_citations(payload: dict) -> list[str] | None:
    for key in ("citations", "links_attached", "sources", "urls"):
        found = url_list(key)(payload)
        if found:
            return found
    return None


class BrightDataAdapter(BaseProviderAdapter):
    """Dataset scraper: trigger a collection job, then poll its snapshot."""

    provider = ProviderName.BRIGHTDATA
    collectors = frozenset(
        {CollectorType.CHATGPT, CollectorType.BING_COPILOT, CollectorType.GROK, CollectorType.GEMINI}
    )
    trigger_url = "https://api.brightdata.com/datasets/v3/trigger"
    snapshot_url = "https://api.brightdata.com/datasets/v3/snapshot/{snapshot_id}"

    datasets = {
        CollectorType.CHATGPT: "gd_m7aof0k82r803d5bjm",
        CollectorType.BING_COPILOT: "gd_m7di5jy6s9geokz8w",
        CollectorType.GROK: "gd_m8ve0u141icu75ae74",
        CollectorType.GEMINI: "gd_mbz66arm2mf9cu856y",
    }
    target_urls = {
        CollectorType.CHATGPT: "https://chatgpt.com/",
        CollectorType.BING_COPILOT: "https://copilot.microsoft.com/chats",
        CollectorType.GROK: "https://grok.com/",
        CollectorType.GEMINI: "https://gemini.google.com/",
    }

    _ANSWER_FIELDS = ("answer_text", "answer", "response", "content", "answer_section_html")
    _NOT_READY = {"running", "building", "starting", "collecting", "pending"}

    cascade = ParseCascade(
        text=(
            field_text("answer_text"),
            field_text("answer"),
            field_text("response"),
            field_text("content"),
            html_text("answer_section_html"),
        ),
        citations=(_brightdata_citations,),
    )

    def __init__(
        self,
        api_key: str = "",
        poll_interval: float = 10.0,
        max_poll_attempts: int = 60,
        sleep=asyncio.sleep,
        **kwargs,
    ):
        super().__init__(api_key=api_key, **kwargs)
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _input(self, request: ProviderRequest) -> dict[str, Any]:
        item: dict[str, Any] = {
            "url": self.target_urls[request.collector_type],
            "prompt": request.prompt,
            "country": _country(request),
        }
        if request.collector_type == CollectorType.CHATGPT:
            item["web_search"] = True
        return item

    async def _fetch(self, client, request, response, timeout) -> None:
        dataset_id = self.datasets[request.collector_type]
        resp = await client.post(
            self.trigger_url,
            params={"dataset_id": dataset_id, "notify": "false", "include_errors": "true"},
            json={"input": [self._input(request)]},
            headers=self._headers(),
        )
        resp.raise_for_status()
        data = resp.json()

        # Some datasets answer synchronously with the record itself
        record = self._unwrap(data)
        if record is not None and self._is_ready(record):
            response.vendor_raw = record
            self._finish(response, record)
            return

        snapshot_id = data.get("snapshot_id") if isinstance(data, dict) else None
        if not snapshot_id:
            raise ValueError("BrightData trigger returned no snapshot_id")
        response.snapshot_id = snapshot_id
        logger.info(
            "BrightData snapshot %s triggered for %s (request %s)",
            snapshot_id,
            request.collector_type.value,
            request.request_id,
        )

        record = await self._poll_snapshot(client, snapshot_id)
        if record is None:
            response.status = ProviderStatus.PENDING
            response.error_message = (
                f"Snapshot {snapshot_id} not ready after {self.max_poll_attempts} polls"
            )
            return

        response.vendor_raw = record
        if record.get("error") and not any(record.get(f) for f in self._ANSWER_FIELDS):
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_message = f"BrightData snapshot error: {record.get('error')}"
            return
        self._finish(response, record)

    async def _poll_snapshot(self, client: httpx.AsyncClient, snapshot_id: str) -> dict | None:
        """Poll until the snapshot holds an answer or the attempts run out."""
        url = self.snapshot_url.format(snapshot_id=snapshot_id)
        for attempt in range(1, self.max_poll_attempts + 1):
            await self._sleep(self.poll_interval)

            resp = await client.get(url, params={"format": "json"}, headers=self._headers())
            if resp.status_code == 202:
                logger.debug("Snapshot %s not ready (poll %d)", snapshot_id, attempt)
                continue
            resp.raise_for_status()

            try:
                data = resp.json()
            except ValueError:
                continue

            record = self._unwrap(data)
            if record is None:
                continue
            if str(record.get("status", "")).lower() in self._NOT_READY:
                continue
            if self._is_ready(record) or record.get("error"):
                logger.info("Snapshot %s ready after %d polls", snapshot_id, attempt)
                return record
        return None

    @staticmethod
    def _unwrap(data: Any) -> dict | None:
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            data = data["data"][0] if data["data"] else None
        return data if isinstance(data, dict) else None

    def _is_ready(self, record: dict) -> bool:
        return any(record.get(f) for f in self._ANSWER_FIELDS)


# ---------------------------------------------------------------------------
# Oxylabs (realtime scraper API)
# ---------------------------------------------------------------------------


def _oxylabs_answer_results(payload: dict) -> str | None:
    results = dig(payload, "results", 0, "content", "answer_results")
    if not isinstance(results, list):
        return None
    parts = []
    for item in results:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("text"):
            parts.append(str(item["text"]))
    return "\n".join(parts)


def _oxylabs_citations(payload: dict) -> list[str] | None:
    result = dig(payload, "results", 0)
    if not isinstance(result, dict):
        return None
    found: list[str] = []
    found += url_list("citations")(result) or []
    found += url_list("sources")(result) or []

    content = result.get("content")
    if isinstance(content, dict):
        for node in content.get("markdown_json") or []:
            for section in (node or {}).get("sections") or []:
                found += url_list("annotations", keys=("url", "link", "source"))(section) or []
        found += url_list("links", keys=("url", "href", "link"))(content) or []
        for entry in content.get("citations") or []:
            if isinstance(entry, dict):
                found += [u for u in entry.get("urls") or [] if isinstance(u, str)]
        found += url_list("citations", keys=("url", "href", "link"))(content) or []
        found += url_list("top_sources", keys=("url",))(content) or []
    return found


class OxylabsAdapter(BaseProviderAdapter):
    """Realtime scraper with a per-collector ``source``."""

    provider = ProviderName.OXYLABS
    collectors = frozenset({CollectorType.CHATGPT, CollectorType.GOOGLE_AIO, CollectorType.PERPLEXITY})
    api_url = "https://realtime.oxylabs.io/v1/queries"

    sources = {
        CollectorType.CHATGPT: "chatgpt",
        CollectorType.GOOGLE_AIO: "google_ai_mode",
        CollectorType.PERPLEXITY: "perplexity",
    }

    cascade = ParseCascade(
        text=(
            field_text("results", 0, "content", "response_text"),
            field_text("results", 0, "content", "markdown_text"),
            field_text("results", 0, "content", "answer_results_md"),
            field_text("results", 0, "content"),
            field_text("results", 0, "content", "text"),
            _oxylabs_answer_results,
        ),
        citations=(_oxylabs_citations,),
        extra_urls=(url_list("results", 0, "urls"), url_list("results", 0, "links")),
    )

    def __init__(self, username: str = "", password: str = "", **kwargs):
        super().__init__(username=username, **kwargs)
        self.username = username
        self.password = password

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    def _body(self, request: ProviderRequest) -> dict[str, Any]:
        source = self.sources[request.collector_type]
        geo = request.extra_options.get("geo_location") or _COUNTRY_NAMES.get(_country(request), "United States")
        body: dict[str, Any] = {"source": source, "parse": True, "geo_location": geo}
        if source == "chatgpt":
            body.update(prompt=request.prompt, search=True)
        elif source == "google_ai_mode":
            body.update(query=request.prompt, render="html")
        else:
            body["prompt"] = request.prompt
        return body

    async def _fetch(self, client, request, response, timeout) -> None:
        resp = await client.post(
            self.api_url,
            json=self._body(request),
            auth=(self.username, self.password),
        )
        resp.raise_for_status()
        data = resp.json()
        response.vendor_raw = data
        response.model = self.sources[request.collector_type]
        self._finish(response, data)


# ---------------------------------------------------------------------------
# SerpApi (Bing Copilot engine)
# ---------------------------------------------------------------------------


def _serpapi_text_blocks(payload: dict) -> str | None:
    blocks = payload.get("text_blocks")
    if not isinstance(blocks, list):
        return None
    lines: list[str] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "list":
            for n, item in enumerate(block.get("list") or [], start=1):
                snippet = item.get("snippet") if isinstance(item, dict) else item
                if snippet:
                    lines.append(f"{n}. {snippet}")
        elif block.get("snippet"):
            lines.append(str(block["snippet"]))
        elif block.get("code"):
            lines.append(str(block["code"]))
    return "\n\n".join(lines)


def _serpapi_citations(payload: dict) -> list[str] | None:
    found = url_list("references", keys=("link", "url"))(payload) or []
    for block in payload.get("text_blocks") or []:
        if isinstance(block, dict):
            found += url_list("snippet_links", keys=("link", "url"))(block) or []
    return found


class SerpApiAdapter(BaseProviderAdapter):
    provider = ProviderName.SERPAPI
    collectors = frozenset({CollectorType.BING_COPILOT})
    api_url = "https://serpapi.com/search.json"

    cascade = ParseCascade(
        text=(_serpapi_text_blocks, field_text("answer"), field_text("header")),
        citations=(_serpapi_citations,),
    )

    def __init__(self, api_key: str = "", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.api_key = api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _fetch(self, client, request, response, timeout) -> None:
        params = {
            "engine": "bing_copilot",
            "q": request.prompt,
            "api_key": self.api_key,
            "hl": _language(request.locale),
        }
        location = request.extra_options.get("location")
        if location:
            params["location"] = location

        resp = await client.get(self.api_url, params=params)
        resp.raise_for_status()
        data = resp.json()
        response.vendor_raw = data
        response.model = "bing_copilot"

        if data.get("error"):
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_message = f"SerpApi error: {data['error']}"
            return
        self._finish(response, data)


# ---------------------------------------------------------------------------
# DataForSEO (live endpoints)
# ---------------------------------------------------------------------------

_DATAFORSEO_LOCATIONS = {
    "US": 2840,
    "GB": 2826,
    "CN": 2156,
    "JP": 2392,
    "KR": 2410,
    "ES": 2724,
    "FR": 2250,
    "DE": 2276,
}


def _dataforseo_live_text(payload: dict) -> str | None:
    texts = []
    for item in payload.get("items") or []:
        for section in (item or {}).get("sections") or []:
            if isinstance(section, dict) and section.get("type", "text") == "text" and isinstance(section.get("text"), str):
                texts.append(section["text"])
    return "\n\n".join(texts)


def _dataforseo_live_urls(payload: dict) -> list[str] | None:
    found: list[str] = []
    for item in payload.get("items") or []:
        for section in (item or {}).get("sections") or []:
            if isinstance(section, dict):
                found += url_list("annotations", keys=("url", "link", "source"))(section) or []
    return found


def _dataforseo_overview_urls(payload: dict) -> list[str] | None:
    return url_list("ai_overview", "links", keys=("url", "link", "source"))(payload) or url_list(
        "ai_overview", "sources", keys=("url", "link", "source")
    )(payload)


class DataForSeoAdapter(BaseProviderAdapter):
    """Live (synchronous) endpoints; the first task's first result is parsed."""

    provider = ProviderName.DATAFORSEO
    collectors = frozenset({CollectorType.GOOGLE_AIO, CollectorType.PERPLEXITY, CollectorType.CLAUDE})
    base_url = "https://api.dataforseo.com/v3"

    llm_engines = {
        CollectorType.PERPLEXITY: ("perplexity", "sonar-reasoning"),
        CollectorType.CLAUDE: ("claude", "claude-opus-4-0"),
    }

    overview_cascade = ParseCascade(
        text=(field_text("ai_overview", "answer"), field_text("ai_overview", "content"), _dataforseo_live_text),
        citations=(_dataforseo_overview_urls,),
        max_urls=25,
    )
    cascade = ParseCascade(
        text=(_dataforseo_live_text,),
        citations=(_dataforseo_live_urls,),
        max_urls=25,
    )

    def __init__(self, username: str = "", password: str = "", **kwargs):
        super().__init__(username=username, **kwargs)
        self.username = username
        self.password = password

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    def _task(self, request: ProviderRequest) -> tuple[str, dict[str, Any]]:
        country = _country(request)
        if request.collector_type == CollectorType.GOOGLE_AIO:
            return "/serp/google/ai_mode/live/advanced", {
                "keyword": request.prompt,
                "language_code": _language(request.locale),
                "location_code": _DATAFORSEO_LOCATIONS.get(country, 2840),
            }
        engine, model = self.llm_engines[request.collector_type]
        return f"/ai_optimization/{engine}/llm_responses/live", {
            "user_prompt": request.prompt,
            "model_name": request.extra_options.get("model_name", model),
            "max_output_tokens": 1024,
            "web_search": True,
            "web_search_country_iso_code": country if country in _DATAFORSEO_LOCATIONS else "US",
        }

    async def _fetch(self, client, request, response, timeout) -> None:
        path, task = self._task(request)
        resp = await client.post(
            self.base_url + path,
            json=[task],
            auth=(self.username, self.password),
        )
        resp.raise_for_status()
        data = resp.json()
        response.vendor_raw = data

        first = dig(data, "tasks", 0)
        if not isinstance(first, dict) or int(first.get("status_code") or 0) >= 40000:
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_code = str((first or {}).get("status_code", ""))
            response.error_message = f"DataForSEO task error: {(first or {}).get('status_message', 'no task')}"
            return

        result = dig(first, "result", 0)
        if not isinstance(result, dict):
            raise ValueError("DataForSEO task returned no result")

        response.model = result.get("model_name") or task.get("model_name", "google_ai_mode")
        cascade = self.overview_cascade if request.collector_type == CollectorType.GOOGLE_AIO else self.cascade
        response.apply(parse_with(cascade, result))
        response.status = ProviderStatus.SUCCESS


# ---------------------------------------------------------------------------
# OpenRouter (direct LLM)
# ---------------------------------------------------------------------------

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


def _openrouter_annotations(payload: dict) -> list[str] | None:
    annotations = dig(payload, "choices", 0, "message", "annotations")
    if not isinstance(annotations, list):
        return None
    return [
        a["url_citation"]["url"]
        for a in annotations
        if isinstance(a, dict) and isinstance(a.get("url_citation"), dict) and a["url_citation"].get("url")
    ]


class OpenRouterAdapter(BaseProviderAdapter):
    provider = ProviderName.OPENROUTER
    collectors = frozenset({CollectorType.CLAUDE, CollectorType.DEEPSEEK})

    models = {
        CollectorType.CLAUDE: "anthropic/claude-haiku-4.5:online",
        CollectorType.DEEPSEEK: "deepseek/deepseek-r1",
    }

    cascade = ParseCascade(
        text=(field_text("choices", 0, "message", "content"),),
        citations=(_openrouter_annotations, url_list("citations")),
    )

    def __init__(self, api_key: str = "", site_url: str = "", site_title: str = "", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.api_key = api_key
        self.site_url = site_url
        self.site_title = site_title

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _fetch(self, client, request, response, timeout) -> None:
        model = request.extra_options.get("model") or self.models[request.collector_type]
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_title:
            headers["X-Title"] = self.site_title

        resp = await client.post(
            OPENROUTER_URL,
            json={"model": model, "messages": [{"role": "user", "content": request.prompt}]},
            headers=headers,
        )
        resp.raise_for_status()
        data = resp.json()
        response.vendor_raw = data
        response.model = data.get("model", model)
        self._finish(response, data)


# ---------------------------------------------------------------------------
# Google Gemini (direct generateContent)
# ---------------------------------------------------------------------------


def _gemini_text(payload: dict) -> str | None:
    parts = dig(payload, "candidates", 0, "content", "parts")
    if not isinstance(parts, list):
        return None
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def _gemini_grounding(payload: dict) -> list[str] | None:
    chunks = dig(payload, "candidates", 0, "groundingMetadata", "groundingChunks")
    if not isinstance(chunks, list):
        return None
    return [dig(c, "web", "uri") for c in chunks if dig(c, "web", "uri")]


class GoogleGeminiDirectAdapter(BaseProviderAdapter):
    """Google AI generateContent; finishReason SAFETY is a vendor error."""

    provider = ProviderName.GOOGLE_GEMINI_DIRECT
    collectors = frozenset({CollectorType.GEMINI})
    api_url = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    cascade = ParseCascade(text=(_gemini_text,), citations=(_gemini_grounding,))

    def __init__(self, api_key: str = "", model: str = "gemini-2.5-flash", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.api_key = api_key
        self.model = model

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _fetch(self, client, request, response, timeout) -> None:
        payload = {
            "contents": [{"parts": [{"text": request.prompt}]}],
            "tools": [{"google_search": {}}],
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 1024,
            },
        }
        resp = await client.post(
            self.api_url.format(model=self.model),
            params={"key": self.api_key},
            json=payload,
        )
        resp.raise_for_status()
        data = resp.json()
        response.vendor_raw = data
        response.model = self.model

        if dig(data, "candidates", 0, "finishReason") == "SAFETY":
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_code = "SAFETY"
            response.error_message = "Gemini blocked the answer (finishReason SAFETY)"
            return
        self._finish(response, data)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderName, type[BaseProviderAdapter]] = {
    ProviderName.BRIGHTDATA: BrightDataAdapter,
    ProviderName.OXYLABS: OxylabsAdapter,
    ProviderName.SERPAPI: SerpApiAdapter,
    ProviderName.DATAFORSEO: DataForSeoAdapter,
    ProviderName.OPENROUTER: OpenRouterAdapter,
    ProviderName.GOOGLE_GEMINI_DIRECT: GoogleGeminiDirectAdapter,
}


def get_adapter(provider: ProviderName, **credentials) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider}")
    return cls(**credentials)


def build_adapters(credentials: dict[str, dict], **overrides) -> dict[ProviderName, BaseProviderAdapter]:
    """One adapter per provider from ``Settings.provider_credentials()``.

    ``overrides`` are extra keyword arguments keyed by provider value, e.g.
    ``brightdata={"poll_interval": 10.0}``.
    """
    adapters = {}
    for provider in ProviderName:
        kwargs = {**credentials.get(provider.value, {}), **overrides.get(provider.value, {})}
        adapters[provider] = get_adapter(provider, **kwargs)
    return adapters
