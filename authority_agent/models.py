from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .reputation import normalize_url

Priority = Literal["low", "normal", "high"]
JobState = Literal["waiting", "active", "completed", "failed"]
ResultStatus = Literal["completed", "failed"]
Platform = Literal["chatgpt", "claude", "perplexity", "google_ai"]

ALL_PLATFORMS: tuple[Platform, ...] = ("chatgpt", "claude", "perplexity", "google_ai")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class JobOptions(_Frozen):
    include_screenshots: bool = Field(False)
    include_performance: bool = Field(True)
    include_ai_factors: bool = Field(True)
    platforms: tuple[Platform, ...] = Field(ALL_PLATFORMS, min_length=1)


class AnalysisJob(_Frozen):
    url: str = Field(..., min_length=1)
    user_id: str | None = None
    priority: Priority = "normal"
    options: JobOptions = Field(default_factory=JobOptions)

    @field_validator("url")
    @classmethod
    def _normalized(cls, value: str) -> str:
        return normalize_url(value)


# ---- snapshot -------------------------------------------------------------


class PerformanceInfo(_Frozen):
    load_time_ms: int = 0
    status_code: int = 0
    redirect_count: int = 0
    ttfb_ms: float = 0.0
    dom_content_loaded_ms: float = 0.0


class CoreWebVitals(_Frozen):
    lcp_ms: float = 0.0
    fid_ms: float = 0.0
    cls: float = 0.0


class ImageStats(_Frozen):
    total: int = 0
    with_alt: int = 0
    lazy_loaded: int = 0


class ResourceStats(_Frozen):
    total: int = 0
    scripts: int = 0
    stylesheets: int = 0
    images: int = 0
    fonts: int = 0
    average_size_bytes: float = 0.0


class TechnicalInfo(_Frozen):
    core_web_vitals: CoreWebVitals = Field(default_factory=CoreWebVitals)
    is_mobile_optimized: bool = False
    image_stats: ImageStats = Field(default_factory=ImageStats)
    resource_stats: ResourceStats = Field(default_factory=ResourceStats)


class HeadingStructure(_Frozen):
    h1: tuple[str, ...] = ()
    h2: tuple[str, ...] = ()
    h3: tuple[str, ...] = ()
    h4: tuple[str, ...] = ()
    h5: tuple[str, ...] = ()
    h6: tuple[str, ...] = ()


class Authorship(_Frozen):
    authors: tuple[str, ...] = ()
    has_author: bool = False


class Freshness(_Frozen):
    dates_found: int = 0
    published: str = ""
    last_modified: str = ""
    is_recent: bool = False


class ContentInfo(_Frozen):
    word_count: int = 0
    readability_score: float = 0.0
    heading_structure: HeadingStructure = Field(default_factory=HeadingStructure)
    paragraph_count: int = 0
    list_count: int = 0
    link_count: int = 0
    external_link_count: int = 0
    external_domains: tuple[str, ...] = ()
    authorship: Authorship = Field(default_factory=Authorship)
    freshness: Freshness = Field(default_factory=Freshness)
    excerpt: str = ""


class SEOInfo(_Frozen):
    title: str = ""
    meta_description: str = ""
    canonical: str = ""
    has_open_graph: bool = False
    structured_data_blocks: tuple[dict[str, Any], ...] = ()


class SecurityInfo(_Frozen):
    has_tls: bool = False
    has_csp: bool = False
    has_hsts: bool = False
    has_referrer_policy: bool = False


class PlatformHeuristics(_Frozen):
    has_structured_data: bool = False
    has_faq: bool = False
    has_code_examples: bool = False
    has_step_by_step: bool = False
    has_definitions: bool = False
    has_citations: bool = False
    has_references: bool = False
    has_academic_tone: bool = False
    has_detailed_explanations: bool = False
    has_recent_data: bool = False
    has_multiple_sources: bool = False
    has_factual_content: bool = False
    has_data_tables: bool = False


class AIFactors(_Frozen):
    schema_markup_count: int = 0
    schema_types: tuple[str, ...] = ()
    microdata_count: int = 0
    faq_count: int = 0
    citation_count: int = 0
    table_count: int = 0
    code_block_count: int = 0
    platform_heuristics: PlatformHeuristics = Field(default_factory=PlatformHeuristics)


class WebsiteSnapshot(_Frozen):
    url: str
    final_url: str = ""
    performance: PerformanceInfo = Field(default_factory=PerformanceInfo)
    technical: TechnicalInfo = Field(default_factory=TechnicalInfo)
    content: ContentInfo = Field(default_factory=ContentInfo)
    seo: SEOInfo = Field(default_factory=SEOInfo)
    security: SecurityInfo = Field(default_factory=SecurityInfo)
    ai_factors: AIFactors = Field(default_factory=AIFactors)
    screenshot_png: bytes | None = Field(None, exclude=True, repr=False)


# ---- scores & results -----------------------------------------------------


class ScoreBreakdown(_Frozen):
    technical: int
    content: int
    seo: int
    ai_optimization: int
    backlink: int
    freshness: int
    trust: int


class AuthorityScore(_Frozen):
    overall: int = Field(..., ge=0, le=100)
    breakdown: ScoreBreakdown
    weights: dict[str, float] = Field(default_factory=dict)
    factors: tuple[str, ...] = ()


class PlatformScore(_Frozen):
    score: int = Field(..., ge=0, le=100)
    factors: tuple[str, ...] = ()
    commentary: str | None = None


class ScoringOutput(_Frozen):
    authority_score: AuthorityScore
    platform_scores: dict[str, PlatformScore]
    recommendations: tuple[str, ...]


class AnalysisResult(_Frozen):
    url: str
    user_id: str | None = None
    authority_score: AuthorityScore
    platform_scores: dict[str, PlatformScore]
    recommendations: tuple[str, ...]
    timestamp: datetime
    status: ResultStatus
    error: str | None = None
    screenshot: str | None = None


# ---- queue ----------------------------------------------------------------


class JobRecord(_Frozen):
    id: str
    status: JobState
    progress: int = Field(0, ge=0, le=100)
    result: AnalysisResult | None = None
    created_at: datetime
    processed_at: datetime | None = None
    failure_reason: str | None = None
    attempts: int = 0


class QueueStats(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    total: int
    backend: Literal["distributed", "local"]


class JobStatusResponse(BaseModel):
    id: str
    status: JobState | Literal["not_found"]
    progress: int = 0
    result: AnalysisResult | None = None
    error: str | None = None


class WorkerStatus(BaseModel):
    backend: Literal["distributed", "local"]
    is_running: bool
    concurrency: int
    name: str


# ---- batch ----------------------------------------------------------------


class BatchProgress(BaseModel):
    total_urls: int
    completed_urls: int = 0
    current_url: str = ""
    current_progress: int = 0
    errors: list[str] = []


class BatchItemResult(BaseModel):
    url: str
    success: bool
    result: AnalysisResult | None = None
    error: str | None = None
    timestamp: datetime


class BatchRequest(BaseModel):
    urls: list[str] = Field(..., min_length=1, max_length=100)
    concurrency: int = Field(2, ge=1, le=10)


class BatchResponse(BaseModel):
    results: list[BatchItemResult]
    progress: BatchProgress


# ---- schema validation ----------------------------------------------------


class SchemaValidationResult(BaseModel):
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    score: int = Field(..., ge=0, le=100)
    schema_type: str | None = None
    property_count: int = 0


class SchemaValidateRequest(BaseModel):
    schema_object: dict[str, Any] = Field(..., alias="schema")
    declared_type: str | None = None

    model_config = ConfigDict(populate_by_name=True)
