"""Lead scoring models."""

from enum import Enum

from pydantic import BaseModel, Field


class LeadQuality(str, Enum):
    HOT = "Hot"
    WARM = "Warm"
    COLD = "Cold"
    UNQUALIFIED = "Unqualified"

    @classmethod
    def from_score(cls, score: int) -> "LeadQuality":
        if score >= 76:
            return cls.HOT
        if score >= 51:
            return cls.WARM
        if score >= 26:
            return cls.COLD
        return cls.UNQUALIFIED


# Tags created on demand when scores are applied to conversations
QUALITY_TAGS: list[dict[str, str]] = [
    {"name": "🔥 Hot Lead", "color": "#ef4444", "quality": "Hot"},
    {"name": "🟠 Warm Lead", "color": "#f97316", "quality": "Warm"},
    {"name": "🟡 Cold Lead", "color": "#eab308", "quality": "Cold"},
    {"name": "⚪ Unqualified", "color": "#6b7280", "quality": "Unqualified"},
    {"name": "💰 Price Shopper", "color": "#8b5cf6", "quality": "PriceShopper"},
]

PRICE_SHOPPER_SIGNAL = "💰 Only asking about prices"


class ConversationLine(BaseModel):
    """One line of a conversation transcript."""

    from_customer: bool
    text: str


class ScoringConfig(BaseModel):
    """Thresholds for lead scoring and price-shopper detection."""

    price_shopper_threshold: int = 30
    price_shopper_message_limit: int = 2
    min_engagement_for_warm: int = 3
    min_engagement_for_hot: int = 5
    strict_price_shopper_mode: bool = False
    price_keywords: list[str] = Field(
        default_factory=lambda: ["price", "how much", "cost", "magkano"]
    )

    def engagement_level(self, message_count: int) -> str:
        if message_count > self.min_engagement_for_hot:
            return "high"
        if message_count > self.min_engagement_for_warm:
            return "medium"
        return "low"


class LeadScore(BaseModel):
    """BANT assessment of one conversation."""

    conversation_id: str = ""
    contact_name: str = ""
    score: int = Field(ge=0, le=100)
    quality: LeadQuality
    has_budget: bool = False
    has_authority: bool = False
    has_need: bool = False
    has_timeline: bool = False
    engagement_level: str = "low"
    signals: list[str] = Field(default_factory=list)
    reasoning: str = ""
    recommended_action: str = ""
    is_price_shopper: bool = False
    fallback: bool = False
