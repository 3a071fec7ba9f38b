"""
Schema-validated intermediate representation of LLM extraction output.

The LLM answers with JSON shaped per content type (campaigns, cars,
transport cars) and with a long tail of legacy or Swedish field names. Every
alias is mapped to one canonical field here, once, so nothing downstream
needs fallback chains. Numeric fields go through parse_amount: null or
zero means unknown.
"""
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from vehicle_catalog.models.domain import ContentType, Variant, Vehicle
from vehicle_catalog.utils.text_normalizer import clean_text, parse_amount

logger = structlog.get_logger(__name__)

VARIANT_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "variant", "variant_name", "model", "modell", "title"),
    "price": ("price", "pris", "cash_price", "kontantpris", "rec_sale_price"),
    "old_price": ("old_price", "ordinary_price", "ord_pris"),
    "private_leasing": (
        "private_leasing",
        "privatleasing",
        "privatleasing_price",
        "private_leasing_price",
    ),
    "old_private_leasing": ("old_private_leasing", "old_privatleasing"),
    "company_leasing": (
        "company_leasing",
        "company_leasing_price",
        "foretagsleasing",
        "business_leasing",
    ),
    "old_company_leasing": ("old_company_leasing", "old_company_leasing_price"),
    "loan_price": ("loan_price", "loan", "billan", "car_loan"),
    "old_loan_price": ("old_loan_price", "old_loan"),
    "fuel_type": ("fuel_type", "fuel", "bransle", "drivmedel"),
    "transmission": ("transmission", "gearbox", "vaxellada"),
    "thumbnail": ("thumbnail", "thumbnail_url", "image", "bild"),
    "equipment": ("equipment", "utrustning", "features"),
    "specs": ("specs", "specifications", "technical_data", "tekniska_data"),
}

VEHICLE_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "name", "model_name", "modell"),
    "brand": ("brand", "make", "marke", "märke"),
    "description": ("description", "beskrivning"),
    "thumbnail": ("thumbnail", "thumbnail_url", "image", "bild"),
    "body_type": ("body_type", "biltyp", "kaross"),
    "source_url": ("source_url", "sourceUrl", "url"),
    "free_text": ("free_text", "content"),
    "variants": ("variants", "vehicle_model", "vehicle_models", "models"),
}

# financing_options blocks as produced by the campaign/car prompts
FINANCING_KEYS = {
    "privatleasing": "private_leasing",
    "private_leasing": "private_leasing",
    "company_leasing": "company_leasing",
    "loan": "loan_price",
}


def _canonicalize(data: Any, aliases: dict[str, tuple[str, ...]]) -> Any:
    """Map the first non-null alias of each canonical field onto it"""
    if not isinstance(data, dict):
        return data

    canonical: dict[str, Any] = {}
    consumed: set[str] = set()
    for field, names in aliases.items():
        for name in names:
            if name in data:
                consumed.add(name)
                if data[name] is not None and field not in canonical:
                    canonical[field] = data[name]

    for key, value in data.items():
        if key not in consumed and key not in canonical:
            canonical[key] = value
    return canonical


def _first_monthly_price(options: Any) -> Optional[int]:
    if isinstance(options, list):
        for option in options:
            if isinstance(option, dict):
                amount = parse_amount(option.get("monthly_price"))
                if amount is not None:
                    return amount
        return None
    if isinstance(options, dict):
        return parse_amount(options.get("monthly_price"))
    return parse_amount(options)


# ============================================================================
# Item models
# ============================================================================


class VariantPayload(BaseModel):
    """One vehicle_model entry after alias normalization"""

    name: str
    price: Optional[int] = None
    old_price: Optional[int] = None
    private_leasing: Optional[int] = None
    old_private_leasing: Optional[int] = None
    company_leasing: Optional[int] = None
    old_company_leasing: Optional[int] = None
    loan_price: Optional[int] = None
    old_loan_price: Optional[int] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    thumbnail: Optional[str] = None
    equipment: list[str] = Field(default_factory=list)
    specs: dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def normalize_aliases(cls, data: Any) -> Any:
        data = _canonicalize(data, VARIANT_ALIASES)
        if not isinstance(data, dict):
            return data

        financing = data.pop("financing_options", None)
        if isinstance(financing, dict):
            for key, field in FINANCING_KEYS.items():
                if data.get(field) is None and key in financing:
                    data[field] = _first_monthly_price(financing[key])

        for field in (
            "price",
            "old_price",
            "private_leasing",
            "old_private_leasing",
            "company_leasing",
            "old_company_leasing",
            "loan_price",
            "old_loan_price",
        ):
            if field in data:
                data[field] = (
                    _first_monthly_price(data[field])
                    if isinstance(data[field], (list, dict))
                    else parse_amount(data[field])
                )

        for field in ("name", "fuel_type", "transmission", "thumbnail"):
            if field in data:
                data[field] = clean_text(data[field])

        equipment = data.get("equipment")
        if isinstance(equipment, str):
            data["equipment"] = [item for item in equipment.split(",")]
        elif equipment is None:
            data.pop("equipment", None)
        elif isinstance(equipment, list):
            data["equipment"] = [
                str(item.get("name", "")) if isinstance(item, dict) else str(item)
                for item in equipment
                if item is not None
            ]

        specs = data.get("specs")
        if isinstance(specs, dict):
            data["specs"] = {
                str(key): value
                for key, value in specs.items()
                if isinstance(value, (str, int, float, bool))
            }
        elif specs is not None:
            data.pop("specs")
        return data

    def to_domain(self) -> Variant:
        return Variant(**self.model_dump())


class VehiclePayload(BaseModel):
    """A vehicle from the cars or transport_cars content types"""

    title: str
    brand: str = ""
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    body_type: Optional[str] = None
    source_url: Optional[str] = None
    free_text: Optional[str] = None
    variants: list[VariantPayload] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def normalize_aliases(cls, data: Any) -> Any:
        data = _canonicalize(data, VEHICLE_ALIASES)
        if not isinstance(data, dict):
            return data
        for field in ("title", "brand", "description", "thumbnail", "body_type", "free_text"):
            if field in data:
                data[field] = clean_text(data[field])
        if data.get("brand") is None:
            data["brand"] = ""
        variants = data.get("variants")
        if variants is None:
            data["variants"] = []
        elif isinstance(variants, list):
            data["variants"] = [
                variant
                for variant in variants
                if isinstance(variant, dict) and clean_text(
                    _canonicalize(variant, VARIANT_ALIASES).get("name")
                )
            ]
        return data

    def to_domain(self, source_url: Optional[str] = None) -> Vehicle:
        return Vehicle(
            brand=self.brand,
            title=self.title,
            description=self.description,
            thumbnail=self.thumbnail,
            body_type=self.body_type,
            source_url=self.source_url or source_url,
            free_text=self.free_text,
            variants=[variant.to_domain() for variant in self.variants],
        )


class CampaignPayload(VehiclePayload):
    """A campaign; reconciled as a vehicle carrying its campaign models"""

    campaign_start: Optional[str] = None
    campaign_end: Optional[str] = None
    whats_included: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_included(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("whats_included"), list):
            data = dict(data)
            data["whats_included"] = [
                str(item.get("name", "")) if isinstance(item, dict) else str(item)
                for item in data["whats_included"]
                if item
            ]
        return data

    def to_domain(self, source_url: Optional[str] = None) -> Vehicle:
        vehicle = super().to_domain(source_url)
        if self.whats_included:
            included = ", ".join(item for item in self.whats_included if item)
            free_text = f"{vehicle.free_text}\n\n{included}" if vehicle.free_text else included
            vehicle = vehicle.model_copy(update={"free_text": free_text})
        return vehicle


# ============================================================================
# Envelopes (discriminated on content_type)
# ============================================================================


class CarsEnvelope(BaseModel):
    content_type: Literal["cars"] = "cars"
    items: list[VehiclePayload] = Field(default_factory=list)


class TransportCarsEnvelope(BaseModel):
    content_type: Literal["transport_cars"] = "transport_cars"
    items: list[VehiclePayload] = Field(default_factory=list)


class CampaignsEnvelope(BaseModel):
    content_type: Literal["campaigns"] = "campaigns"
    items: list[CampaignPayload] = Field(default_factory=list)


ExtractionEnvelope = Annotated[
    Union[CarsEnvelope, TransportCarsEnvelope, CampaignsEnvelope],
    Field(discriminator="content_type"),
]

_envelope_adapter = TypeAdapter(ExtractionEnvelope)
_item_models = {
    ContentType.CARS: VehiclePayload,
    ContentType.TRANSPORT_CARS: VehiclePayload,
    ContentType.CAMPAIGNS: CampaignPayload,
}


class IngestResult(BaseModel):
    vehicles: list[Vehicle] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)


def _raw_items(data: Any, content_type: ContentType) -> list:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    for key in (content_type.value, "items", "vehicles", "cars", "campaigns", "transport_cars"):
        if isinstance(data.get(key), list):
            return data[key]
    if "title" in data or "name" in data:
        return [data]
    return []


def ingest_payload(
    data: Any, content_type: ContentType, source_url: Optional[str] = None
) -> IngestResult:
    """
    Validate parsed LLM output into domain vehicles.

    The whole envelope is validated first; when any item is invalid each item
    is validated on its own so one bad entry does not discard its siblings.
    """
    items = _raw_items(data, content_type)
    envelope_input = {"content_type": content_type.value, "items": items}

    try:
        envelope = _envelope_adapter.validate_python(envelope_input)
        return IngestResult(
            vehicles=[item.to_domain(source_url) for item in envelope.items]
        )
    except ValidationError:
        pass

    item_model = _item_models[content_type]
    result = IngestResult()
    for position, item in enumerate(items):
        try:
            payload = item_model.model_validate(item)
        except ValidationError as e:
            logger.warning(
                "Dropping invalid extraction item",
                position=position,
                content_type=content_type.value,
                errors=e.error_count(),
            )
            result.rejected.append(f"item {position}: {e.errors()[0]['msg']}")
            continue
        result.vehicles.append(payload.to_domain(source_url))
    return result
