from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date, datetime


# Pachka records (normalized at the client boundary)


class Message(BaseModel):
    id: int
    chat_id: int | None = None
    user_id: int | None = None  # Author
    created_at: datetime
    content: str = ""
    thread_chat_id: int | None = None  # Container holding thread replies
    is_thread_reply: bool = False
    parent_message_id: int | None = None

    @property
    def is_top_level(self) -> bool:
        return not self.is_thread_reply and self.parent_message_id is None


class Reaction(BaseModel):
    user_id: int | None = None
    code: str = ""
    created_at: datetime | None = None


class UserDirectoryEntry(BaseModel):
    id: int
    first_name: str = ""
    last_name: str = ""
    image_url: str | None = None
    bot: bool = False

    @property
    def display_name(self) -> str:
        name = self.first_name or ""
        if self.last_name:
            name += " " + self.last_name
        return name


class Chat(BaseModel):
    id: int
    name: str = ""
    channel: bool = False
    public: bool = False
    member_ids: list[int] = []
    owner_id: int | None = None
    created_at: datetime | None = None
    last_message_at: datetime | None = None


# Query input


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_date: date = Field(alias="from")
    to_date: date | None = Field(default=None, alias="to")

    @model_validator(mode="after")
    def check_order(self):
        if self.to_date is not None and self.to_date < self.from_date:
            raise ValueError("Date range end is before its start")
        return self

    @property
    def end(self) -> date:
        return self.to_date or self.from_date


class AnalyticsRequest(BaseModel):
    chat_ids: list[int] = Field(..., min_length=1, max_length=50)
    date_range: DateRange | None = None


class MessageAnalyticsRequest(BaseModel):
    message_ids: list[int] = Field(..., min_length=1, max_length=200)


# Derived statistics


class MessageStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    chat_id: int | None = None
    text: str
    date: datetime
    reader_count: int
    reactor_count: int  # Distinct reacting users
    thread_commenter_count: int  # Distinct thread reply authors
    reaction_count: int = 0  # Raw reaction events
    thread_reply_count: int = 0  # Raw thread replies
    er: float  # 0-100%


class DayStat(BaseModel):
    date: date
    er: float


class UserStat(BaseModel):
    user_id: int
    name: str = ""
    avatar: str | None = None
    message_count: int = 0
    thread_message_count: int = 0
    reaction_count: int = 0
    score: float = 0.0


class ReactionUsage(BaseModel):
    emoji: str
    count: int


class PeriodMetrics(BaseModel):
    total_messages: float = 0
    total_reads: float = 0
    total_reactions: float = 0
    messages_with_reactions: float = 0
    total_thread_messages: float = 0
    engagement_rate: float = 0.0


class ComparisonResult(BaseModel):
    date_range: DateRange
    metrics: PeriodMetrics
    percentage_differences: PeriodMetrics
    absolute_differences: PeriodMetrics


class AnalyticsResult(BaseModel):
    engagement_rate: float = 0.0  # 0-100%
    message_stats: list[MessageStat] = []
    days_stats: list[DayStat] = []
    top_users: list[UserStat] = []
    top_reactions: list[ReactionUsage] = []
    chat_ids: list[int] = []
    date_range: DateRange | None = None
    comparison: ComparisonResult | None = None


class ComparisonRequest(BaseModel):
    current: AnalyticsResult
    comparison_range: DateRange | None = None


# API responses


class CurrentUser(BaseModel):
    id: int
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    role: str | None = None
    image_url: str | None = None


class ProgressEvent(BaseModel):
    progress: int


class HealthResponse(BaseModel):
    status: str
    pachka_api_url: str
    max_concurrent_requests: int
