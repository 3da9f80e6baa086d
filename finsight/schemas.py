"""
Pydantic schemas for upstream payloads.

Transforms validate raw JSON against these and hand back plain,
JSON-compatible dicts, so results can go straight into the durable cache.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UpstreamModel(BaseModel):
    """Accepts camelCase or snake_case keys, keeps unknown fields."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# ===== TARIFF SCHEMAS =====

class TariffAlert(UpstreamModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    priority: str = "medium"
    country: str
    impact_severity: Optional[float] = Field(default=None, alias="impactSeverity")
    confidence: Optional[float] = None
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")
    source_name: Optional[str] = Field(default=None, alias="sourceName")
    publish_date: Optional[datetime] = Field(default=None, alias="publishDate")
    effective_date: Optional[datetime] = Field(default=None, alias="effectiveDate")
    tariff_rate: Optional[float] = Field(default=None, alias="tariffRate")
    product_categories: List[str] = Field(default_factory=list, alias="productCategories")
    trading_partners: List[str] = Field(default_factory=list, alias="tradingPartners")
    ai_enhanced: bool = Field(default=False, alias="aiEnhanced")


# ===== NEWS SCHEMAS =====

class NewsArticle(UpstreamModel):
    title: str
    url: Optional[str] = None
    source: Optional[str] = None
    summary: Optional[str] = None
    published_at: Optional[datetime] = Field(default=None, alias="publishedAt")
    analysis: Optional[str] = None


# ===== SIMULATION SCHEMAS =====

class SimulationRecord(UpstreamModel):
    """Inputs, outputs and comparisons share an open shape keyed by id."""
    id: Optional[str] = None
    name: Optional[str] = None


class SankeyLink(UpstreamModel):
    source: Any
    target: Any
    value: float


class SankeyData(UpstreamModel):
    nodes: List[Dict[str, Any]]
    links: List[SankeyLink]


# ===== COMPLETION SCHEMAS =====

class ChatMessage(BaseModel):
    role: str
    content: str


class ChatChoice(UpstreamModel):
    message: ChatMessage


class ChatCompletion(UpstreamModel):
    model: Optional[str] = None
    choices: List[ChatChoice] = Field(min_length=1)
