from __future__ import annotations
import re
import os
import math
import json
import time
import queue
import logging
import threading
from abc import abstractmethod
from collections.abc import Callable
from hashlib import md5
from typing import Any, Literal
from urllib.parse import quote

import httpx
import jsonschema
from prometheus_client import Counter, Histogram


logger = logging.getLogger(__name__)

type Version = int
type Variables = dict[str, Any]
type DictPayload = dict[str, Any]

DEFAULT_BASE_URL = "https://api.varia.dev"
DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_FETCH_TIMEOUT = 2.0
DEFAULT_RECORD_TIMEOUT = 1.0

# Version reported for fallback results. It is never recorded.
FALLBACK_VERSION = 0

_BUCKETS = 1_000_000
# Weights are percentages with two implied decimal digits.
_BUCKETS_PER_PERCENT = _BUCKETS // 100


class VariaError(Exception):
    """
    Base class of all errors raised while resolving assignments.
    """


class ConfigNotFoundError(VariaError):
    """
    The key is unknown to the remote source.
    """


class VersionNotFoundError(VariaError):
    """
    The key is known but the requested version is not.
    """


class InvalidConfigError(VariaError):
    """
    The config is structurally broken, e.g. it has no variants or its weights
    sum to more than 100. A fallback can't repair it so it always propagates.
    """


class TransientFetchError(VariaError):
    """
    A remote call failed due to a network error, a timeout or an unexpected
    response.
    """


def hash_bucket(sticky_id: str) -> int:
    """
    Hashes the given sticky id to a bucket in the range [0, 1_000_000).

    Stability of this hash function is crucial. The same sticky id must land
    in the same bucket across processes, python versions and client libraries
    written in other languages, since the variant a session is assigned to
    depends on it.
    """
    return (
        int.from_bytes(
            md5(sticky_id.encode("utf-8")).digest()[:4],
            byteorder="big",  # Being explicit to survive default changes.
            signed=False,  # Being explicit to survive default changes.
        )
        % _BUCKETS
    )


class _WeightedVariant:
    __slots__ = ("weight",)
    weight: float


class ModelVariant(_WeightedVariant):
    __slots__ = ("name",)
    name: str

    def __init__(self, name: str, weight: float):
        self.name = name
        self.weight = weight

    def __repr__(self):
        return f"ModelVariant({self.name!r}, {self.weight!r})"


class PromptVariant(_WeightedVariant):
    """
    A prompt A/B variant points at a prompt document rather than holding the
    prompt text. prompt_version None means the latest version of the prompt.
    """

    __slots__ = ("prompt_key", "prompt_version")
    prompt_key: str
    prompt_version: Version | None

    def __init__(self, prompt_key: str, prompt_version: Version | None, weight: float):
        self.prompt_key = prompt_key
        self.prompt_version = prompt_version
        self.weight = weight

    def __repr__(self):
        return f"PromptVariant({self.prompt_key!r}, {self.prompt_version!r}, {self.weight!r})"


def select_variant[V: _WeightedVariant](variants: list[V], sticky_id: str) -> tuple[int, V]:
    """
    Select a variant for the sticky id and return it along with its index.

    The variants partition the bucket space in list order, each taking
    weight * 10_000 buckets. The first variant whose cumulative range covers
    the sticky id's bucket is selected. Buckets not covered because weights
    sum to less than 100 all go to the last variant.
    """
    if not variants:
        raise InvalidConfigError("no variants configured")
    h = hash_bucket(sticky_id)
    selected = len(variants) - 1
    cumulative = 0.0
    for i, v in enumerate(variants):
        cumulative += v.weight * _BUCKETS_PER_PERCENT
        if h < cumulative:
            selected = i
            break
    return selected, variants[selected]


_placeholder_re = re.compile(r"\{\{(\s*\w+\s*)\}\}")


def interpolate(template: str, variables: Variables | None) -> str:
    """
    Replace {{name}} placeholders in the template with the matching variables.
    Placeholders without a matching variable are left as they are, so a
    template can be filled in over multiple passes. Substituted values are
    not expanded again.
    """
    if not variables:
        return template

    def _replace(m: re.Match) -> str:
        name = m.group(1).strip()
        return str(variables[name]) if name in variables else m.group(0)

    return _placeholder_re.sub(_replace, template)


with open(os.path.join(os.path.dirname(__file__), "remote_schema.json")) as f:
    _remote_schema = json.load(f)


def _normalize_variants(raw: list | dict) -> list[DictPayload]:
    # Keyed variants keep their insertion order.
    if isinstance(raw, dict):
        return list(raw.values())
    return list(raw)


def _weights_problem(weights: list[float]) -> str | None:
    if not weights:
        return "no variants configured"
    if not all(math.isfinite(w) for w in weights):
        return "variant weights must be finite"
    if any(w < 0 for w in weights):
        return "variant weights must not be negative"
    total = sum(weights)
    # Small tolerance for weights like 33.33 + 33.33 + 33.34.
    if total > 100 + 1e-9:
        return f"variant weights sum to {total} which is more than 100"
    return None


class Config:
    """
    A published version of a model A/B config.
    """

    __slots__ = ("key", "version", "variants", "problem")
    key: str
    version: Version
    variants: list[ModelVariant]
    # Why the config can't be resolved. Detected at ingestion. None when usable.
    problem: str | None

    @staticmethod
    def from_dict(d: DictPayload) -> Config:
        jsonschema.validate(d, _remote_schema["config"])
        c = Config()
        c.key = d["key"]
        c.version = d.get("version") or 1
        c.variants = [ModelVariant(v["model"], v["weight"]) for v in _normalize_variants(d["variants"])]
        c.problem = _weights_problem([v.weight for v in c.variants])
        return c


class PromptDocument:
    """
    A published version of a prompt. Templates contain {{name}} placeholders.
    """

    __slots__ = ("key", "version", "system_template", "user_template", "problem")
    key: str
    version: Version
    system_template: str
    user_template: str
    problem: str | None

    @staticmethod
    def from_dict(d: DictPayload) -> PromptDocument:
        jsonschema.validate(d, _remote_schema["prompt"])
        p = PromptDocument()
        p.key = d["key"]
        p.version = d.get("version") or 1
        p.system_template = d["system_prompt"]
        p.user_template = d["user_template"]
        p.problem = None
        return p


class PromptABTest:
    """
    A published version of a prompt A/B test.
    """

    __slots__ = ("key", "version", "variants", "problem")
    key: str
    version: Version
    variants: list[PromptVariant]
    problem: str | None

    @staticmethod
    def from_dict(d: DictPayload) -> PromptABTest:
        jsonschema.validate(d, _remote_schema["prompt_ab_test"])
        t = PromptABTest()
        t.key = d["key"]
        t.version = d.get("version") or 1
        t.variants = [PromptVariant(v["prompt_key"], v.get("prompt_version"), v["weight"]) for v in _normalize_variants(d["variants"])]
        t.problem = _weights_problem([v.weight for v in t.variants])
        return t


type CachedValue = Config | PromptDocument | PromptABTest


class CacheEntry:
    """
    All known versions of a key and the latest version reported by the remote
    source. latest, when set, always has an entry in versions.
    """

    __slots__ = ("versions", "latest")
    versions: dict[Version, CachedValue]
    latest: Version | None

    def __init__(self):
        self.versions = {}
        self.latest = None


class VersionedStore:
    """
    In-memory map from key to CacheEntry. Entries and versions are never
    evicted. Reads take no lock. Writers are serialized.
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def upsert(self, key: str, version: Version, value: CachedValue, latest: bool = True):
        """
        Merge the version into the entry for key. With latest, the version
        becomes the latest regardless of what was there, since the remote
        source always reports its true latest. Otherwise it only becomes the
        latest if the entry has none.
        """
        with self._mu:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry()
            # The version must be in place before latest points at it.
            entry.versions[version] = value
            if latest or entry.latest is None:
                entry.latest = version
            self._entries[key] = entry


class RemoteSource:
    """
    The remote source of truth for configs, prompts and prompt A/B tests. All
    operations must return or fail within the given timeout in seconds and
    raise TransientFetchError on failure.
    """

    @abstractmethod
    def fetch_configs(self, timeout: float) -> list[DictPayload]: ...

    @abstractmethod
    def fetch_config_version(self, key: str, version: Version, timeout: float) -> DictPayload | None: ...

    @abstractmethod
    def fetch_prompts(self, timeout: float) -> list[DictPayload]: ...

    @abstractmethod
    def fetch_prompt_version(self, key: str, version: Version, timeout: float) -> DictPayload | None: ...

    @abstractmethod
    def fetch_prompt_ab_tests(self, timeout: float) -> list[DictPayload]: ...

    @abstractmethod
    def fetch_prompt_ab_test_version(self, key: str, version: Version, timeout: float) -> DictPayload | None: ...

    @abstractmethod
    def record_session(self, payload: DictPayload, timeout: float) -> None: ...


class HTTPRemoteSource(RemoteSource):
    """
    RemoteSource backed by the configs HTTP API. Every request carries the
    API key as a bearer token.
    """

    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL, client: httpx.Client | None = None):
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._owns_client = client is None
        self._client = client or httpx.Client()

    def close(self):
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, timeout: float, body: DictPayload | None = None) -> httpx.Response:
        try:
            return self._client.request(
                method,
                self._base_url + path,
                headers=self._headers,
                json=body,
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{method} {path} failed: {e!r}") from e

    def _get_json(self, path: str, timeout: float, allow_missing: bool = False) -> Any:
        resp = self._request("GET", path, timeout)
        if allow_missing and resp.status_code == 404:
            return None
        if not resp.is_success:
            raise TransientFetchError(f"GET {path} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransientFetchError(f"GET {path} returned invalid JSON") from e

    def _get_list(self, path: str, field: str, timeout: float) -> list[DictPayload]:
        data = self._get_json(path, timeout)
        if not isinstance(data, dict):
            raise TransientFetchError(f"GET {path} returned unexpected {type(data).__name__}")
        items = data.get(field) or []
        if not isinstance(items, list):
            raise TransientFetchError(f"GET {path} returned non-list {field!r}")
        return items

    def _get_version(self, collection: str, key: str, version: Version, timeout: float) -> DictPayload | None:
        path = f"/{collection}/{quote(key, safe='')}/version/{version}"
        data = self._get_json(path, timeout, allow_missing=True)
        if data is not None and not isinstance(data, dict):
            raise TransientFetchError(f"GET {path} returned unexpected {type(data).__name__}")
        return data

    def fetch_configs(self, timeout: float) -> list[DictPayload]:
        return self._get_list("/configs", "configs", timeout)

    def fetch_config_version(self, key: str, version: Version, timeout: float) -> DictPayload | None:
        return self._get_version("configs", key, version, timeout)

    def fetch_prompts(self, timeout: float) -> list[DictPayload]:
        return self._get_list("/prompts", "prompts", timeout)

    def fetch_prompt_version(self, key: str, version: Version, timeout: float) -> DictPayload | None:
        return self._get_version("prompts", key, version, timeout)

    def fetch_prompt_ab_tests(self, timeout: float) -> list[DictPayload]:
        return self._get_list("/prompt-ab-tests", "prompt_ab_tests", timeout)

    def fetch_prompt_ab_test_version(self, key: str, version: Version, timeout: float) -> DictPayload | None:
        return self._get_version("prompt-ab-tests", key, version, timeout)

    def record_session(self, payload: DictPayload, timeout: float) -> None:
        # The response is of no interest.
        self._request("POST", "/sessions", timeout, body=payload)


_prom_resolution_duration = Histogram(
    "varia_resolution_seconds",
    "Assignment resolution duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1, 5],
    labelnames=["kind", "reason"],
)
_prom_remote_calls = Counter(
    "varia_remote_calls_total",
    "Calls made to the remote source",
    labelnames=["operation", "outcome"],
)


class _Catalog:
    """
    One remote collection (configs, prompts or prompt A/B tests) along with
    its cache and the logic to fill the cache from the remote source.

    Full refreshes are serialized and counted by a generation number. A caller
    that missed the cache passes the generation it observed before the miss,
    and skips its own fetch if another refresh finished in the meantime. This
    keeps a burst of cold-start lookups from turning into a burst of fetches.
    """

    def __init__(
        self,
        name: str,
        noun: str,
        parse: Callable[[DictPayload], CachedValue],
        fetch_all: str,
        fetch_version: str,
        get_source: Callable[[], RemoteSource | None],
        timeout: float,
    ):
        self.name = name
        self.noun = noun
        self.store = VersionedStore()
        self._parse = parse
        self._fetch_all = fetch_all
        self._fetch_version = fetch_version
        self._get_source = get_source
        self._timeout = timeout
        self._refresh_mu = threading.Lock()
        self._generation = 0
        self._last_error: TransientFetchError | None = None

    def refresh(self, seen_generation: int | None = None):
        """
        Fetch the whole collection and upsert every valid entry. Invalid
        entries are logged and skipped. Raises TransientFetchError if the
        fetch fails, in which case the cache is left untouched.
        """
        source = self._get_source()
        if source is None:
            return
        with self._refresh_mu:
            if seen_generation is not None and seen_generation != self._generation:
                # Someone else refreshed while we waited. Share their outcome.
                if self._last_error is not None:
                    raise TransientFetchError(str(self._last_error))
                return
            try:
                entries = getattr(source, self._fetch_all)(self._timeout)
            except TransientFetchError as e:
                self._generation += 1
                self._last_error = e
                _prom_remote_calls.labels(operation=self._fetch_all, outcome="error").inc()
                raise
            self._generation += 1
            self._last_error = None
            _prom_remote_calls.labels(operation=self._fetch_all, outcome="ok").inc()

            # Parse everything before applying anything.

            values = []
            for entry in entries:
                try:
                    values.append(self._parse(entry))
                except jsonschema.ValidationError as e:
                    logger.warning("Skipping malformed %s entry: %s", self.noun.lower(), e.message)
            for value in values:
                if value.problem is not None:
                    logger.warning("%s %r version %d is invalid: %s", self.noun, value.key, value.version, value.problem)
                self.store.upsert(value.key, value.version, value)
            logger.debug("Fetched %d %s: %s", len(values), self.name, [v.key for v in values])

    def _fetch_one(self, key: str, version: Version) -> CachedValue:
        source = self._get_source()
        if source is None:
            raise VersionNotFoundError(f"{self.noun} {key!r} version {version} not found")
        try:
            d = getattr(source, self._fetch_version)(key, version, self._timeout)
        except TransientFetchError:
            _prom_remote_calls.labels(operation=self._fetch_version, outcome="error").inc()
            raise
        _prom_remote_calls.labels(operation=self._fetch_version, outcome="ok").inc()
        if d is None:
            raise VersionNotFoundError(f"{self.noun} {key!r} version {version} not found")
        try:
            value = self._parse({**d, "key": key, "version": version})
        except jsonschema.ValidationError as e:
            raise InvalidConfigError(f"{self.noun} {key!r} version {version} is malformed: {e.message}") from e
        # A pinned version must not displace the latest known version.
        self.store.upsert(key, version, value, latest=False)
        return value

    def lookup(self, key: str, version: Version | None = None) -> CachedValue:
        """
        Return the given version of key, or its latest version if version is
        None. Falls back to the remote source when the key or the version is
        not cached.
        """
        seen_generation = self._generation
        entry = self.store.get(key)
        if entry is None:
            logger.debug("%s %r not in cache, fetching", self.noun, key)
            self.refresh(seen_generation)
            entry = self.store.get(key)
        if entry is None:
            raise ConfigNotFoundError(f"{self.noun} {key!r} not found")

        target = version if version is not None else entry.latest
        if target is None:
            raise VersionNotFoundError(f"{self.noun} {key!r} has no cached version")
        value = entry.versions.get(target)
        if value is None:
            logger.debug("%s %r version %d not in cache, fetching", self.noun, key, target)
            value = self._fetch_one(key, target)
        if value.problem is not None:
            raise InvalidConfigError(f"{self.noun} {key!r} version {target} is invalid: {value.problem}")
        return value


type SyncState = Literal["uninitialized", "syncing", "idle"]


class SyncService:
    """
    Keeps the catalogs fresh. Once started, a daemon thread refreshes every
    catalog immediately and then once every interval. Failures leave the
    cache as it was and are retried on the next tick.
    """

    def __init__(self, catalogs: list[_Catalog]):
        self._catalogs = catalogs
        self._mu = threading.Lock()
        self._active = 0
        self._synced = False
        self._thread: threading.Thread | None = None
        self._stop_wait = threading.Event()

    @property
    def state(self) -> SyncState:
        with self._mu:
            if self._active:
                return "syncing"
            return "idle" if self._synced else "uninitialized"

    def start(self, interval: float):
        with self._mu:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._worker, args=(interval,), name="varia-sync", daemon=True)
        self._thread.start()

    def _worker(self, interval: float):
        while not self._stop_wait.is_set():
            self.sync_once()
            self._stop_wait.wait(interval)

    def stop(self, timeout: float | None = None):
        self._stop_wait.set()
        with self._mu:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def sync_once(self) -> bool:
        """
        Refresh every catalog once. Returns True if all refreshes succeeded.
        Never raises.
        """
        with self._mu:
            self._active += 1
        ok = True
        try:
            for c in self._catalogs:
                try:
                    c.refresh()
                except TransientFetchError as e:
                    ok = False
                    logger.warning("Failed to sync %s, keeping cached copy: %s", c.name, e)
                except Exception:
                    ok = False
                    logger.exception("Unexpected error syncing %s", c.name)
        finally:
            with self._mu:
                self._active -= 1
                self._synced = True
        return ok


class AssignmentRecorder:
    """
    Reports assignments to the remote source for analytics. Reports are
    queued and sent by a daemon worker thread so recording never adds
    latency to resolution. There are no retries and every failure is logged
    and dropped.
    """

    def __init__(self, get_source: Callable[[], RemoteSource | None], timeout: float, max_pending: int = 10_000):
        self._get_source = get_source
        self._timeout = timeout
        self._queue: queue.Queue[DictPayload | None] = queue.Queue(max_pending)
        self._thread_mu = threading.Lock()
        self._thread: threading.Thread | None = None

    def record(self, config_key: str, version: Version, session_id: str, model: str):
        if version == FALLBACK_VERSION or self._get_source() is None:
            return
        self._ensure_worker()
        payload = {
            "config_key": config_key,
            "config_version": version,
            "session_id": session_id,
            "assigned_model": model,
        }
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            logger.warning("Dropping assignment record for %r, too many pending", config_key)

    def _ensure_worker(self):
        with self._thread_mu:
            if self._thread is None:
                self._thread = threading.Thread(target=self._worker, name="varia-recorder", daemon=True)
                self._thread.start()

    def _worker(self):
        while True:
            payload = self._queue.get()
            try:
                if payload is None:
                    return
                source = self._get_source()
                if source is None:
                    continue
                try:
                    source.record_session(payload, self._timeout)
                except Exception as e:
                    _prom_remote_calls.labels(operation="record_session", outcome="error").inc()
                    logger.debug("Failed to record assignment %s: %r", payload, e)
                else:
                    _prom_remote_calls.labels(operation="record_session", outcome="ok").inc()
            finally:
                self._queue.task_done()

    def flush(self):
        """
        Block until every queued record has been handled.
        """
        self._queue.join()

    def stop(self, timeout: float | None = None):
        with self._thread_mu:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)


class Assignment:
    """
    The result of resolving a model config for a session.
    """

    __slots__ = ("config_key", "version", "session_id", "model", "variant_index", "reason")
    config_key: str
    version: Version
    session_id: str
    model: str
    # Index of the selected variant. None for fallbacks.
    variant_index: int | None
    reason: Literal["assigned", "fallback"]


class PromptResult:
    """
    An interpolated prompt. ab_test_key and variant_index are set only when
    the prompt was selected by a prompt A/B test.
    """

    __slots__ = ("key", "version", "system", "user", "ab_test_key", "variant_index")

    def __init__(
        self,
        key: str,
        version: Version,
        system: str,
        user: str,
        ab_test_key: str | None = None,
        variant_index: int | None = None,
    ):
        self.key = key
        self.version = version
        self.system = system
        self.user = user
        self.ab_test_key = ab_test_key
        self.variant_index = variant_index

    def __repr__(self):
        return f"PromptResult(key={self.key!r}, version={self.version!r}, ab_test_key={self.ab_test_key!r}, variant_index={self.variant_index!r})"


class PromptContext:
    """
    Which prompt was last served, used to tag the next trace.
    """

    __slots__ = ("prompt_key", "prompt_version", "ab_test_key", "variant_index")

    def __init__(self, prompt_key: str, prompt_version: Version, ab_test_key: str | None = None, variant_index: int | None = None):
        self.prompt_key = prompt_key
        self.prompt_version = prompt_version
        self.ab_test_key = ab_test_key
        self.variant_index = variant_index


class Engine:
    """
    The engine resolves model names and prompts for sticky session ids from
    a local cache of the remote configs. Resolution against a warm cache
    never touches the network. The engine is thread-safe.

    source: The remote source. When None, initialize builds an
        HTTPRemoteSource from the API key. Without a source the engine only
        ever returns fallbacks.
    sync_interval: Seconds between background syncs.
    fetch_timeout: Timeout in seconds of every fetch.
    record_timeout: Timeout in seconds of every assignment record.
    """

    def __init__(
        self,
        source: RemoteSource | None = None,
        *,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        record_timeout: float = DEFAULT_RECORD_TIMEOUT,
    ):
        self._init_mu = threading.Lock()
        self._initialized = False
        self._source = source
        self._owned_source: HTTPRemoteSource | None = None
        self._sync_interval = sync_interval

        get_source = self._get_source
        self._configs = _Catalog("configs", "Config", Config.from_dict, "fetch_configs", "fetch_config_version", get_source, fetch_timeout)
        self._prompts = _Catalog("prompts", "Prompt", PromptDocument.from_dict, "fetch_prompts", "fetch_prompt_version", get_source, fetch_timeout)
        self._prompt_ab_tests = _Catalog(
            "prompt A/B tests",
            "Prompt A/B test",
            PromptABTest.from_dict,
            "fetch_prompt_ab_tests",
            "fetch_prompt_ab_test_version",
            get_source,
            fetch_timeout,
        )
        self._sync = SyncService([self._configs, self._prompts, self._prompt_ab_tests])
        self._recorder = AssignmentRecorder(get_source, record_timeout)

        self._prompt_context_mu = threading.Lock()
        self._prompt_context: PromptContext | None = None

    def _get_source(self) -> RemoteSource | None:
        return self._source

    @property
    def sync_state(self) -> SyncState:
        return self._sync.state

    def initialize(self, api_key: str | None = None, base_url: str | None = None, sync_interval: float | None = None):
        """
        Start syncing in the background. Only the first call has any effect.
        Resolution calls this with no arguments if it wasn't called before.

        api_key: Used when no source was given to the engine. Defaults to the
            VARIA_API_KEY environment variable. Without one, the engine runs
            in no-op mode.
        base_url: Defaults to the VARIA_BASE_URL environment variable, or
            DEFAULT_BASE_URL.
        sync_interval: Overrides the interval given to the engine.
        """
        with self._init_mu:
            if self._initialized:
                return
            if self._source is None:
                api_key = api_key or os.environ.get("VARIA_API_KEY")
                if api_key:
                    base_url = base_url or os.environ.get("VARIA_BASE_URL") or DEFAULT_BASE_URL
                    self._owned_source = HTTPRemoteSource(api_key, base_url)
                    self._source = self._owned_source
            if sync_interval is not None:
                self._sync_interval = sync_interval
            # Set last so that no resolution sees a half initialized engine.
            self._initialized = True
            if self._source is None:
                logger.info("No API key configured, only fallbacks will be served")
                return
            self._sync.start(self._sync_interval)

    def _ensure_initialized(self):
        if not self._initialized:
            self.initialize()

    def sync(self) -> bool:
        """
        Refresh every cached collection now. Returns True if all refreshes
        succeeded.
        """
        self._ensure_initialized()
        return self._sync.sync_once()

    def close(self):
        """
        Stop background syncing, send pending assignment records and release
        the HTTP client if the engine created it.
        """
        self._sync.stop()
        self._recorder.flush()
        self._recorder.stop()
        if self._owned_source is not None:
            self._owned_source.close()

    def flush_records(self):
        self._recorder.flush()

    @staticmethod
    def _validate_args(key: str, session_id: str | None, version: Version | None, require_session: bool = True):
        if not isinstance(key, str):
            raise TypeError(f"key must be a string, not {type(key).__name__}")
        if (require_session or session_id is not None) and not isinstance(session_id, str):
            raise TypeError(f"session id must be a string, not {type(session_id).__name__}")
        if version is not None:
            if not isinstance(version, int) or isinstance(version, bool):
                raise TypeError(f"version must be an int, not {type(version).__name__}")
            if version < 1:
                raise ValueError("version must be positive")

    @staticmethod
    def _can_fall_back(e: Exception, key: str, fallback: Any) -> bool:
        """
        Decide whether the failure to resolve key may be papered over with
        the fallback, and log it if so.
        """
        if fallback is None or isinstance(e, InvalidConfigError):
            return False
        if isinstance(e, (ConfigNotFoundError, VersionNotFoundError)):
            logger.warning("%s, using fallback %r", e, fallback)
        elif isinstance(e, TransientFetchError):
            logger.warning("Could not fetch %r (%s), using fallback %r", key, e, fallback)
        else:
            logger.error("Unexpected error resolving %r, using fallback %r", key, fallback, exc_info=e)
        return True

    def detailed_get_model(
        self,
        config_key: str,
        session_id: str,
        version: Version | None = None,
        fallback: str | None = None,
    ) -> Assignment:
        """
        Resolve the model for the session and return the full Assignment.
        See get_model.
        """
        self._validate_args(config_key, session_id, version)
        self._ensure_initialized()
        start = time.perf_counter()

        a = Assignment()
        a.config_key = config_key
        a.session_id = session_id
        try:
            config = self._configs.lookup(config_key, version)
            a.variant_index, variant = select_variant(config.variants, session_id)
            a.model = variant.name
            a.version = config.version
            a.reason = "assigned"
        except Exception as e:
            if not self._can_fall_back(e, config_key, fallback):
                raise
            a.model = fallback
            a.version = FALLBACK_VERSION
            a.variant_index = None
            a.reason = "fallback"

        _prom_resolution_duration.labels(kind="model", reason=a.reason).observe(time.perf_counter() - start)
        logger.debug("Assigned %r to session %r for %r v%d (%s)", a.model, session_id, config_key, a.version, a.reason)
        self._recorder.record(config_key, a.version, session_id, a.model)
        return a

    def get_model(
        self,
        config_key: str,
        session_id: str,
        version: Version | None = None,
        fallback: str | None = None,
    ) -> str:
        """
        Return the model assigned to the session by the config. The same
        session always gets the same model for a given config version.

        config_key: The config name.
        session_id: The sticky id, e.g. a conversation id.
        version: Pin to this config version. None follows the latest.
        fallback: Model to return when the config can't be resolved. Without
            it, unknown configs and versions raise.
        """
        return self.detailed_get_model(config_key, session_id, version, fallback).model

    def _render(self, doc: PromptDocument, variables: Variables | None, ab_test_key: str | None = None, variant_index: int | None = None) -> PromptResult:
        return PromptResult(
            key=doc.key,
            version=doc.version,
            system=interpolate(doc.system_template, variables),
            user=interpolate(doc.user_template, variables),
            ab_test_key=ab_test_key,
            variant_index=variant_index,
        )

    @staticmethod
    def _render_fallback(key: str, fallback: tuple[str, str], variables: Variables | None) -> PromptResult:
        system, user = fallback
        return PromptResult(
            key=key,
            version=FALLBACK_VERSION,
            system=interpolate(system, variables),
            user=interpolate(user, variables),
        )

    def get_prompt(
        self,
        prompt_key: str,
        variables: Variables | None = None,
        version: Version | None = None,
        fallback: tuple[str, str] | None = None,
    ) -> PromptResult:
        """
        Return the prompt interpolated with the variables.

        fallback: A (system, user) pair of templates to use when the prompt
            can't be resolved. It is interpolated like the real prompt.
        """
        self._validate_args(prompt_key, None, version, require_session=False)
        self._ensure_initialized()
        start = time.perf_counter()
        try:
            doc = self._prompts.lookup(prompt_key, version)
        except Exception as e:
            if not self._can_fall_back(e, prompt_key, fallback):
                raise
            _prom_resolution_duration.labels(kind="prompt", reason="fallback").observe(time.perf_counter() - start)
            return self._render_fallback(prompt_key, fallback, variables)

        result = self._render(doc, variables)
        self._set_prompt_context(PromptContext(doc.key, doc.version))
        _prom_resolution_duration.labels(kind="prompt", reason="assigned").observe(time.perf_counter() - start)
        return result

    def get_prompt_ab(
        self,
        ab_test_key: str,
        session_id: str,
        variables: Variables | None = None,
        version: Version | None = None,
        fallback: tuple[str, str] | None = None,
    ) -> PromptResult:
        """
        Return the prompt the A/B test assigns to the session, interpolated
        with the variables. The same session always gets the same prompt for
        a given test version.

        The test only selects a prompt key and an optional prompt version.
        That prompt is then looked up like get_prompt does.
        """
        self._validate_args(ab_test_key, session_id, version)
        self._ensure_initialized()
        start = time.perf_counter()
        try:
            test = self._prompt_ab_tests.lookup(ab_test_key, version)
            index, variant = select_variant(test.variants, session_id)
            try:
                doc = self._prompts.lookup(variant.prompt_key, variant.prompt_version)
            except ConfigNotFoundError as e:
                raise ConfigNotFoundError(f"Prompt {variant.prompt_key!r} (from A/B test {ab_test_key!r}) not found") from e
        except Exception as e:
            if not self._can_fall_back(e, ab_test_key, fallback):
                raise
            _prom_resolution_duration.labels(kind="prompt_ab", reason="fallback").observe(time.perf_counter() - start)
            return self._render_fallback(ab_test_key, fallback, variables)

        result = self._render(doc, variables, ab_test_key, index)
        self._set_prompt_context(PromptContext(doc.key, doc.version, ab_test_key, index))
        _prom_resolution_duration.labels(kind="prompt_ab", reason="assigned").observe(time.perf_counter() - start)
        logger.debug("Served prompt %r v%d from A/B test %r (variant %d)", doc.key, doc.version, ab_test_key, index)
        return result

    def _set_prompt_context(self, ctx: PromptContext):
        with self._prompt_context_mu:
            self._prompt_context = ctx

    def pop_prompt_context(self) -> PromptContext | None:
        """
        Return the context of the last served prompt and clear it, so that
        it tags one trace at most.
        """
        with self._prompt_context_mu:
            ctx, self._prompt_context = self._prompt_context, None
        return ctx

    def clear_prompt_context(self):
        with self._prompt_context_mu:
            self._prompt_context = None
