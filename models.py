"""Request and result shapes for a miniature-workshop generation run."""

from enum import Enum

from pydantic import BaseModel, field_validator


class Category(str, Enum):
    VEGETABLE = "Vegetable"
    SEAFOOD = "Seafood"
    MEAT = "Meat"


class WorkerConcept(str, Enum):
    CONSTRUCTION = "Construction"
    CHEF = "Chef"
    FARMER = "Farmer"


class AspectRatio(str, Enum):
    ONE_ONE = "1:1"
    THREE_FOUR = "3:4"
    FOUR_THREE = "4:3"
    NINE_SIXTEEN = "9:16"
    SIXTEEN_NINE = "16:9"


class Resolution(str, Enum):
    AUTO = "Auto"
    ONE_K = "1K"
    TWO_K = "2K"
    FOUR_K = "4K"


DEFAULT_IMAGE_SIZE = Resolution.ONE_K


CATEGORY_DATA = [
    {"id": Category.VEGETABLE, "label": "Plant-Based", "icon": "🌿"},
    {"id": Category.SEAFOOD, "label": "Marine/Oil", "icon": "🐟"},
    {"id": Category.MEAT, "label": "Protein/Whole", "icon": "🥚"},
]

WORKER_DATA = [
    {"id": WorkerConcept.CONSTRUCTION, "label": "Construction", "icon": "👷", "desc": "Large crew & heavy mini-tools"},
    {"id": WorkerConcept.CHEF, "label": "Chef", "icon": "👨‍🍳", "desc": "Many chefs & precise instruments"},
    {"id": WorkerConcept.FARMER, "label": "Farmer", "icon": "🌾", "desc": "Group harvest & gathering"},
]

ASPECT_RATIOS = [r.value for r in AspectRatio]
RESOLUTIONS = [r.value for r in Resolution]


def resolution_label(resolution):
    return "Smart" if resolution == Resolution.AUTO.value else resolution


def resolve_image_size(resolution: Resolution) -> str:
    """Map a form resolution to the size the image model accepts.

    "Auto" never reaches the remote call; it becomes the 1K default.
    """
    resolution = Resolution(resolution)
    if resolution is Resolution.AUTO:
        return DEFAULT_IMAGE_SIZE.value
    return resolution.value


class GenerationRequest(BaseModel):
    model_config = {"frozen": True}

    category: Category
    product_name: str
    worker_concept: WorkerConcept
    aspect_ratio: AspectRatio
    resolution: Resolution = Resolution.AUTO

    @field_validator("product_name")
    @classmethod
    def product_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Product name cannot be empty")
        return v

    @property
    def image_size(self) -> str:
        return resolve_image_size(self.resolution)


class GeneratedResult(BaseModel):
    model_config = {"frozen": True}

    image_url: str
    prompt_text: str


DEFAULT_FORM = {
    "category": Category.VEGETABLE.value,
    "product_name": "바이오메가",
    "worker_concept": WorkerConcept.CHEF.value,
    "aspect_ratio": AspectRatio.ONE_ONE.value,
    "resolution": Resolution.AUTO.value,
}
