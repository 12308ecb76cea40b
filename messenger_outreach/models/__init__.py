"""Data models for the application."""

from messenger_outreach.models.automation import (
    AutomationExecution,
    AutomationRule,
    AutomationRunResult,
    AutomationStop,
    ExecutionStatus,
    LanguageStyle,
    StopReason,
)
from messenger_outreach.models.batch import (
    BATCH_TRANSITIONS,
    OPEN_BATCH_STATUSES,
    BatchStatus,
    MessageBatch,
)
from messenger_outreach.models.common import as_utc, new_id, utc_now
from messenger_outreach.models.contact_timing import (
    HOURS_PER_WEEK,
    SUCCESS_WEIGHTS,
    ContactEvent,
    ContactEventType,
    ContactRecommendation,
    ContactWindow,
    HourBin,
    SegmentPrior,
    TimezoneConfidence,
    TimezoneInference,
    TimezoneSource,
    TimingConfig,
    TimingResult,
)
from messenger_outreach.models.conversation import (
    DEFAULT_SENDER_NAME,
    Conversation,
    ConversationStatus,
    ConversationTag,
    IncomingMessengerEvent,
    SyncResult,
    Tag,
)
from messenger_outreach.models.lead import (
    QUALITY_TAGS,
    ConversationLine,
    LeadQuality,
    LeadScore,
    ScoringConfig,
)
from messenger_outreach.models.message import (
    FINISHED_STATUSES,
    MESSAGE_TRANSITIONS,
    ActivityType,
    DeliveryErrorType,
    DeliveryStatus,
    MediaAttachment,
    MediaType,
    Message,
    MessageActivity,
    MessageAutoTag,
    MessageDelivery,
    MessageStatus,
    OutgoingMessage,
    RecipientType,
    SendResult,
)
from messenger_outreach.models.pipeline import (
    DEFAULT_STAGE_COLOR,
    DEFAULT_STAGES,
    AnalysisOutcome,
    Opportunity,
    OpportunityStatus,
    PipelineSettings,
    PipelineStage,
    StageAnalysis,
    StageChange,
)
from messenger_outreach.models.user import (
    FacebookPage,
    TokenRefreshResult,
    TokenRefreshStatus,
    User,
    UserRole,
)

__all__ = [
    # Helpers
    "as_utc",
    "new_id",
    "utc_now",
    # User
    "User",
    "UserRole",
    "FacebookPage",
    "TokenRefreshResult",
    "TokenRefreshStatus",
    # Conversation
    "Conversation",
    "ConversationStatus",
    "ConversationTag",
    "DEFAULT_SENDER_NAME",
    "IncomingMessengerEvent",
    "SyncResult",
    "Tag",
    # Message
    "ActivityType",
    "DeliveryErrorType",
    "DeliveryStatus",
    "FINISHED_STATUSES",
    "MESSAGE_TRANSITIONS",
    "MediaAttachment",
    "MediaType",
    "Message",
    "MessageActivity",
    "MessageAutoTag",
    "MessageDelivery",
    "MessageStatus",
    "OutgoingMessage",
    "RecipientType",
    "SendResult",
    # Batch
    "BATCH_TRANSITIONS",
    "OPEN_BATCH_STATUSES",
    "BatchStatus",
    "MessageBatch",
    # Automation
    "AutomationExecution",
    "AutomationRule",
    "AutomationRunResult",
    "AutomationStop",
    "ExecutionStatus",
    "LanguageStyle",
    "StopReason",
    # Contact timing
    "ContactEvent",
    "ContactEventType",
    "ContactRecommendation",
    "ContactWindow",
    "HOURS_PER_WEEK",
    "HourBin",
    "SUCCESS_WEIGHTS",
    "SegmentPrior",
    "TimezoneConfidence",
    "TimezoneInference",
    "TimezoneSource",
    "TimingConfig",
    "TimingResult",
    # Lead scoring
    "ConversationLine",
    "LeadQuality",
    "LeadScore",
    "QUALITY_TAGS",
    "ScoringConfig",
    # Pipeline
    "AnalysisOutcome",
    "DEFAULT_STAGE_COLOR",
    "DEFAULT_STAGES",
    "Opportunity",
    "OpportunityStatus",
    "PipelineSettings",
    "PipelineStage",
    "StageAnalysis",
    "StageChange",
]
