from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urlparse

from .models import SchemaValidationResult

PENALTY_MISSING_CONTEXT = 25
PENALTY_MISSING_TYPE = 25
PENALTY_MISSING_REQUIRED = 15
PENALTY_MISSING_RECOMMENDED = 5
PENALTY_NESTED_TYPE = 10
PENALTY_NESTED_UNTYPED = 5
PENALTY_BAD_URL = 5
PENALTY_BAD_DATE = 5
PENALTY_BAD_RATING = 10
PENALTY_BAD_CURRENCY = 5
PENALTY_FOREIGN_CONTEXT = 5

_URL_PROPERTIES = ("url", "image", "logo", "sameAs")
_DATE_PROPERTIES = ("datePublished", "dateModified", "dateCreated", "startDate", "endDate")
_SCHEMA_ORG_CONTEXTS = ("https://schema.org", "http://schema.org", "https://schema.org/", "http://schema.org/")

# A property counts as present when it, or one of its accepted aliases, is set.
_ALIASES = {
    "headline": ("name", "title"),
    "name": ("title",),
}


@dataclass(frozen=True)
class TypeRule:
    required: tuple[str, ...] = ()
    recommended: tuple[str, ...] = ()
    nested: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


_ARTICLE = TypeRule(
    required=("headline", "author", "datePublished"),
    recommended=("image", "publisher", "dateModified", "description", "mainEntityOfPage"),
    nested={"author": ("Person", "Organization"), "publisher": ("Organization",)},
)

SCHEMA_RULES: Mapping[str, TypeRule] = MappingProxyType({
    "Article": _ARTICLE,
    "NewsArticle": _ARTICLE,
    "BlogPosting": _ARTICLE,
    "Product": TypeRule(
        required=("name",),
        recommended=("image", "description", "sku", "brand", "offers", "aggregateRating"),
        nested={
            "offers": ("Offer", "AggregateOffer"),
            "brand": ("Brand", "Organization"),
            "aggregateRating": ("AggregateRating",),
        },
    ),
    "Recipe": TypeRule(
        required=("name", "recipeIngredient", "recipeInstructions"),
        recommended=("image", "description", "author", "totalTime", "nutrition"),
        nested={"author": ("Person", "Organization")},
    ),
    "Organization": TypeRule(
        required=("name",),
        recommended=("url", "logo", "sameAs", "contactPoint"),
        nested={"contactPoint": ("ContactPoint",), "address": ("PostalAddress",)},
    ),
    "LocalBusiness": TypeRule(
        required=("name", "address"),
        recommended=("telephone", "url", "openingHours", "geo", "image"),
        nested={"address": ("PostalAddress",), "geo": ("GeoCoordinates",)},
    ),
    "Person": TypeRule(required=("name",), recommended=("url", "jobTitle", "sameAs", "image")),
    "WebPage": TypeRule(required=("name",), recommended=("description", "url")),
    "WebSite": TypeRule(required=("name", "url"), recommended=("potentialAction",)),
    "FAQPage": TypeRule(required=("mainEntity",), nested={"mainEntity": ("Question",)}),
    "HowTo": TypeRule(required=("name", "step"), recommended=("image", "totalTime", "supply", "tool")),
    "Event": TypeRule(
        required=("name", "startDate", "location"),
        recommended=("endDate", "description", "image", "offers", "organizer"),
        nested={"location": ("Place", "VirtualLocation"), "offers": ("Offer",)},
    ),
    "BreadcrumbList": TypeRule(required=("itemListElement",), nested={"itemListElement": ("ListItem",)}),
})

GENERIC_RULE = TypeRule(recommended=("name", "description"))


def _present(schema: Mapping[str, Any], prop: str) -> bool:
    for key in (prop, *_ALIASES.get(prop, ())):
        value = schema.get(key)
        if value not in (None, "", [], {}):
            return True
    return False


def _primary_type(value: Any) -> str | None:
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, str)), None)
    return value if isinstance(value, str) and value.strip() else None


def _is_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    p = urlparse(value.strip())
    return p.scheme in ("http", "https") and bool(p.netloc)


def _is_date(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _as_number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class _Report:
    def __init__(self):
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.penalty = 0

    def error(self, message: str, penalty: int):
        self.errors.append(message)
        self.penalty += penalty

    def warn(self, message: str, penalty: int = 0):
        self.warnings.append(message)
        self.penalty += penalty


def _check_nested(schema: Mapping[str, Any], rule: TypeRule, report: _Report):
    for prop, allowed in rule.nested.items():
        value = schema.get(prop)
        if value is None:
            continue
        items = value if isinstance(value, list) else [value]
        for item in items:
            if not isinstance(item, dict):
                continue
            nested_type = _primary_type(item.get("@type"))
            if nested_type is None:
                report.warn(f"{prop} should include @type property", PENALTY_NESTED_UNTYPED)
            elif nested_type not in allowed:
                report.error(
                    f"{prop} must be of type {' or '.join(allowed)} (got {nested_type})",
                    PENALTY_NESTED_TYPE,
                )


def _check_values(schema: Mapping[str, Any], report: _Report):
    for prop in _URL_PROPERTIES:
        value = schema.get(prop)
        if value is None or isinstance(value, dict):
            continue
        if isinstance(value, list):
            for index, item in enumerate(value):
                if not isinstance(item, dict) and not _is_url(item):
                    report.warn(f"{prop}[{index}] should be a valid URL", PENALTY_BAD_URL)
        elif not _is_url(value):
            report.warn(f"{prop} should be a valid URL", PENALTY_BAD_URL)

    for prop in _DATE_PROPERTIES:
        value = schema.get(prop)
        if value is not None and not _is_date(value):
            report.warn(f"{prop} should be a valid ISO 8601 date", PENALTY_BAD_DATE)

    rating = schema.get("aggregateRating")
    if isinstance(rating, dict) and rating.get("ratingValue") is not None:
        value = _as_number(rating.get("ratingValue"))
        best = _as_number(rating.get("bestRating")) or 5.0
        worst = _as_number(rating.get("worstRating")) or 0.0
        if value is None or not worst <= value <= best:
            report.error(f"ratingValue should be between {worst:g} and {best:g}", PENALTY_BAD_RATING)

    offers = schema.get("offers")
    if isinstance(offers, dict) and "priceCurrency" in offers:
        currency = offers.get("priceCurrency")
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            report.warn("priceCurrency should be a 3-letter ISO currency code", PENALTY_BAD_CURRENCY)


def validate_schema(
    schema: Mapping[str, Any],
    declared_type: str | None = None,
    rules: Mapping[str, TypeRule] = SCHEMA_RULES,
) -> SchemaValidationResult:
    """Validate one JSON-LD object against the per-type property table.

    ``declared_type`` selects the rules when the object carries no ``@type``
    of its own. The score starts at 100 and loses points per violation.
    """
    report = _Report()

    if not isinstance(schema, Mapping):
        report.error("Schema must be a JSON object", PENALTY_MISSING_CONTEXT + PENALTY_MISSING_TYPE)
        return SchemaValidationResult(is_valid=False, errors=report.errors, warnings=[], score=50)

    context = schema.get("@context")
    if not context:
        report.error("Missing @context property", PENALTY_MISSING_CONTEXT)
    elif isinstance(context, str) and context not in _SCHEMA_ORG_CONTEXTS:
        report.warn('@context should be "https://schema.org" for Schema.org markup', PENALTY_FOREIGN_CONTEXT)

    own_type = _primary_type(schema.get("@type"))
    if own_type is None:
        report.error("Missing @type property", PENALTY_MISSING_TYPE)
    schema_type = own_type or declared_type

    rule = rules.get(schema_type or "", GENERIC_RULE)
    label = schema_type or "Schema"
    for prop in rule.required:
        if not _present(schema, prop):
            report.error(f"Missing required property '{prop}' for {label}", PENALTY_MISSING_REQUIRED)
    for prop in rule.recommended:
        if not _present(schema, prop):
            report.warn(f"{label} should include {prop}", PENALTY_MISSING_RECOMMENDED)

    _check_nested(schema, rule, report)
    _check_values(schema, report)

    if schema.get("name") and schema.get("title"):
        report.warn("Both name and title are present - consider using only one")
    if isinstance(schema.get("author"), list):
        report.warn("Author should be an object, not an array")

    return SchemaValidationResult(
        is_valid=not report.errors,
        errors=report.errors,
        warnings=report.warnings,
        score=max(0, 100 - report.penalty),
        schema_type=schema_type,
        property_count=len(schema),
    )
