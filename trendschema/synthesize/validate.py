"""Structural validation of synthesized schema.org JSON-LD.

One pydantic model per top-level @type. Payloads are validated from their
serialized JSON, so what passes is exactly what gets served.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from pydantic import ValidationError as PydanticValidationError

from trendschema.errors import ValidationError
from trendschema.synthesize.builders import HEADLINE_MAX, SCHEMA_CONTEXT

# Absolute http(s) URL or a root-relative path
Url = Union[HttpUrl, Annotated[str, Field(pattern=r"^/([^/].*)?$")]]
IsoDate = Union[datetime, date]
Price = Annotated[Decimal, Field(ge=0)]
Currency = Annotated[str, Field(pattern=r"^[A-Z]{3}$")]
Name = Annotated[str, Field(min_length=1)]


class Node(BaseModel):
    """A typed schema.org node. Unknown properties pass through."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type_: str = Field(alias="@type")


class BrandNode(Node):
    type_: Literal["Brand"] = Field(alias="@type")
    name: Name


class PersonNode(Node):
    type_: Literal["Person", "Organization"] = Field(alias="@type")
    name: Name


class PlaceNode(Node):
    type_: Literal["Place"] = Field(alias="@type")
    name: Name
    address: str | None = None


class VirtualLocationNode(Node):
    type_: Literal["VirtualLocation"] = Field(alias="@type")
    url: Url


class OfferNode(Node):
    type_: Literal["Offer"] = Field(alias="@type")
    price: Price
    priceCurrency: Currency
    url: Url | None = None
    availability: Url | None = None


class Markup(Node):
    """Top-level document: schema.org context plus common properties."""

    context: Literal["https://schema.org"] = Field(alias="@context")
    description: str | None = None
    keywords: str | None = None
    image: Url | list[Url] | None = None


class OfferMarkup(Markup):
    type_: Literal["Offer"] = Field(alias="@type")
    name: Name
    price: Price
    priceCurrency: Currency
    url: Url | None = None
    availability: Url | None = None
    validFrom: IsoDate | None = None
    priceValidUntil: IsoDate | None = None


class ProductMarkup(Markup):
    type_: Literal["Product"] = Field(alias="@type")
    name: Name
    offers: OfferNode
    brand: BrandNode | None = None
    sku: str | int | None = None


class ArticleMarkup(Markup):
    type_: Literal["Article"] = Field(alias="@type")
    headline: str = Field(min_length=1, max_length=HEADLINE_MAX)
    datePublished: IsoDate
    dateModified: IsoDate | None = None
    author: PersonNode
    url: Url | None = None


class EventMarkup(Markup):
    type_: Literal["Event"] = Field(alias="@type")
    name: Name
    startDate: IsoDate
    endDate: IsoDate | None = None
    location: PlaceNode | VirtualLocationNode
    url: Url | None = None


class WebPageMarkup(Markup):
    type_: Literal["WebPage"] = Field(alias="@type")
    name: Name
    url: Url


MARKUP_MODELS: dict[str, type[Markup]] = {
    "Offer": OfferMarkup,
    "Product": ProductMarkup,
    "Article": ArticleMarkup,
    "Event": EventMarkup,
    "WebPage": WebPageMarkup,
}


def _problems(exc: PydanticValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"])
        problems.append(f"$.{path}: {error['msg']}" if path else f"$: {error['msg']}")
    return problems


def validate_jsonld(payload: dict[str, Any]) -> None:
    """Raise ValidationError listing every structural problem found."""
    problems: list[str] = []
    try:
        text = json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        problems.append(f"not serializable as JSON: {exc}")
        text = None

    if payload.get("@context") != SCHEMA_CONTEXT:
        problems.append(f"@context must be {SCHEMA_CONTEXT}")
    type_name = payload.get("@type")
    model = MARKUP_MODELS.get(type_name) if isinstance(type_name, str) else None
    if model is None:
        problems.append(f"unsupported @type: {type_name!r}")
    elif text is not None:
        try:
            model.model_validate_json(text)
        except PydanticValidationError as exc:
            problems.extend(_problems(exc))

    if problems:
        raise ValidationError(
            f"invalid {payload.get('@type', 'markup')}: {problems[0]}"
            + (f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""),
            problems=problems,
        )
