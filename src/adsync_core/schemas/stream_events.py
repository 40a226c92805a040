"""Pydantic models for inbound push-feed messages.

Messages arrive as ``{messageId, subscriptionId, dataSetId, timestamp, payload}``.
The dataset identifier is resolved through an explicit lookup table into a
``DatasetCategory``; the payload is then validated against the model for that
category. Timestamps stay raw strings so that malformed values degrade in the
timezone resolver instead of failing validation.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..exceptions import UnsupportedDatasetCategoryError


class DatasetCategory(str, Enum):
    """Push dataset categories."""

    TRAFFIC = "traffic"
    CONVERSION = "conversion"
    BUDGET = "budget"


class AdProduct(str, Enum):
    """Advertising product that produced the dataset."""

    SPONSORED_PRODUCTS = "sp"
    SPONSORED_BRANDS = "sb"
    SPONSORED_DISPLAY = "sd"


DATASET_IDS: dict[str, tuple[DatasetCategory, AdProduct]] = {
    "sp-traffic": (DatasetCategory.TRAFFIC, AdProduct.SPONSORED_PRODUCTS),
    "sb-traffic": (DatasetCategory.TRAFFIC, AdProduct.SPONSORED_BRANDS),
    "sd-traffic": (DatasetCategory.TRAFFIC, AdProduct.SPONSORED_DISPLAY),
    "sp-conversion": (DatasetCategory.CONVERSION, AdProduct.SPONSORED_PRODUCTS),
    "sb-conversion": (DatasetCategory.CONVERSION, AdProduct.SPONSORED_BRANDS),
    "sd-conversion": (DatasetCategory.CONVERSION, AdProduct.SPONSORED_DISPLAY),
    "sp-budget-usage": (DatasetCategory.BUDGET, AdProduct.SPONSORED_PRODUCTS),
    "sb-budget-usage": (DatasetCategory.BUDGET, AdProduct.SPONSORED_BRANDS),
    "sd-budget-usage": (DatasetCategory.BUDGET, AdProduct.SPONSORED_DISPLAY),
    "traffic": (DatasetCategory.TRAFFIC, AdProduct.SPONSORED_PRODUCTS),
    "conversion": (DatasetCategory.CONVERSION, AdProduct.SPONSORED_PRODUCTS),
    "budget": (DatasetCategory.BUDGET, AdProduct.SPONSORED_PRODUCTS),
}


def resolve_dataset(dataset_id: Optional[str]) -> tuple[DatasetCategory, AdProduct]:
    """Map a dataset identifier to (category, ad product).

    Raises:
        UnsupportedDatasetCategoryError: If the identifier is not in the table
    """
    if not isinstance(dataset_id, str):
        raise UnsupportedDatasetCategoryError(dataset_id)
    resolved = DATASET_IDS.get(dataset_id.strip().lower())
    if resolved is None:
        raise UnsupportedDatasetCategoryError(dataset_id)
    return resolved


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    event_time: str = Field(
        ..., alias="eventTime", min_length=1, description="UTC event time (bucketing key)"
    )


class TrafficPayload(_Payload):
    """Impressions, clicks and cost for a campaign/ad group."""

    ad_group_id: Optional[str] = Field(None, alias="adGroupId")
    impressions: int = Field(0, ge=0)
    clicks: int = Field(0, ge=0)
    cost: float = Field(0.0, ge=0)


class ConversionPayload(_Payload):
    """Attributed sales and orders for a campaign/ad group."""

    ad_group_id: Optional[str] = Field(None, alias="adGroupId")
    attributed_sales: float = Field(0.0, alias="attributedSales", ge=0)
    attributed_conversions: int = Field(0, alias="attributedConversions", ge=0)


class BudgetPayload(_Payload):
    """Budget consumption snapshot for a campaign."""

    budget_used: float = Field(..., alias="budgetUsed", ge=0)
    budget_remaining: Optional[float] = Field(None, alias="budgetRemaining")


class _EventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., alias="messageId", min_length=1)
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    dataset_id: str = Field(..., alias="dataSetId")
    ad_product: AdProduct = Field(AdProduct.SPONSORED_PRODUCTS, alias="adProduct")
    push_timestamp: Optional[str] = Field(None, alias="timestamp")


class TrafficEvent(_EventBase):
    dataset_category: Literal[DatasetCategory.TRAFFIC] = Field(
        DatasetCategory.TRAFFIC, alias="datasetCategory"
    )
    payload: TrafficPayload


class ConversionEvent(_EventBase):
    dataset_category: Literal[DatasetCategory.CONVERSION] = Field(
        DatasetCategory.CONVERSION, alias="datasetCategory"
    )
    payload: ConversionPayload


class BudgetEvent(_EventBase):
    dataset_category: Literal[DatasetCategory.BUDGET] = Field(
        DatasetCategory.BUDGET, alias="datasetCategory"
    )
    payload: BudgetPayload


IncomingEvent = Annotated[
    Union[TrafficEvent, ConversionEvent, BudgetEvent],
    Field(discriminator="dataset_category"),
]

_incoming_event_adapter = TypeAdapter(IncomingEvent)


def parse_incoming_event(raw: dict) -> Union[TrafficEvent, ConversionEvent, BudgetEvent]:
    """Validate a raw queue message into a typed event.

    Accepts either ``dataSetId`` (e.g. ``sp-traffic``) or ``datasetCategory``
    and either ``payload`` or ``data`` for the body.

    Raises:
        UnsupportedDatasetCategoryError: Unknown dataset identifier
        pydantic.ValidationError: Malformed message or payload
    """
    dataset_id = raw.get("dataSetId") or raw.get("datasetCategory")
    category, ad_product = resolve_dataset(dataset_id)

    normalized = {
        "messageId": raw.get("messageId"),
        "subscriptionId": raw.get("subscriptionId"),
        "dataSetId": dataset_id,
        "adProduct": ad_product,
        "timestamp": raw.get("timestamp"),
        "datasetCategory": category,
        "payload": raw.get("payload", raw.get("data")),
    }
    return _incoming_event_adapter.validate_python(normalized)
