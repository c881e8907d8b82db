"""
Pydantic models for the ticket collaboration engine

Field names are snake_case in Python and camelCase on the wire; every model
accepts either form so server JSON and push payloads parse directly.
Timestamps are normalised to timezone-aware UTC.
"""
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Optional, Dict, Any, List, FrozenSet, Iterable, Literal
import json

from dateutil import parser as date_parser
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict


# ============================================================================
# Helpers
# ============================================================================

def to_utc(value: Any) -> Any:
    """
    Normalise a timestamp to an aware UTC datetime.

    Accepts ISO-8601 strings, epoch seconds and datetimes. Anything else is
    returned unchanged so pydantic can report it.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=dt_timezone.utc)
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=dt_timezone.utc)
        return value.astimezone(dt_timezone.utc)
    return value


def unique_tags(tags: Iterable[str]) -> List[str]:
    """Strip, drop empties and de-duplicate tags keeping first appearance"""
    seen = set()
    result = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def same_value(field: str, left: Any, right: Any) -> bool:
    """Field equality; tags compare as a set"""
    if field == "tags":
        return set(left or []) == set(right or [])
    return left == right


def to_wire(value: Any) -> Any:

    """Convert a field value into its JSON form"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    return value


# ============================================================================
# Enums
# ============================================================================

class TicketStatus(str, Enum):
    """Ticket lifecycle states"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    ESCALATED = "escalated"
    DONE = "done"


class TicketPriority(str, Enum):
    """Ticket priorities, ordered low to critical"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)


_PRIORITY_ORDER = [
    TicketPriority.LOW,
    TicketPriority.MEDIUM,
    TicketPriority.HIGH,
    TicketPriority.CRITICAL,
]


class EventType(str, Enum):
    """Push event types consumed by the reconciler"""
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    MESSAGE_ADDED = "message_added"


# ============================================================================
# Tickets
# ============================================================================

class TicketMessage(BaseModel):
    """One entry of a ticket's message thread"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1)
    ticket_id: Optional[str] = Field(None, alias="ticketId")
    author_type: str = Field("agent", alias="authorType")
    author_name: Optional[str] = Field(None, alias="authorName")
    body: str = ""
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    is_private: bool = Field(False, alias="isPrivate")

    @field_validator("created_at", mode="before")
    @classmethod
    def normalise_timestamp(cls, v: Any) -> Any:
        return to_utc(v)


class Ticket(BaseModel):
    """
    Ticket as held in the cache.

    Attributes:
        id: Stable, globally unique identifier
        subject: Ticket subject line
        status: Lifecycle status
        priority: Ordinal priority
        category: Category name (optional)
        assigned_agent: Assigned agent reference (optional)
        tags: Unique tags, first appearance order kept
        notes: Free-form internal notes
        messages: Append-only message thread
        sla_due_at: SLA deadline (optional)
        created_at: Creation timestamp
        updated_at: Last update timestamp, never decreases in the cache
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1)
    subject: str = ""
    status: TicketStatus = TicketStatus.OPEN
    priority: TicketPriority = TicketPriority.MEDIUM
    category: Optional[str] = None
    assigned_agent: Optional[str] = Field(None, alias="assignedAgent")
    tags: List[str] = Field(default_factory=list)
    notes: List[Dict[str, Any]] = Field(default_factory=list)
    messages: List[TicketMessage] = Field(default_factory=list)
    sla_due_at: Optional[datetime] = Field(None, alias="slaDueAt")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    @field_validator("sla_due_at", "created_at", "updated_at", mode="before")
    @classmethod
    def normalise_timestamp(cls, v: Any) -> Any:
        return to_utc(v)

    @field_validator("tags", mode="before")
    @classmethod
    def normalise_tags(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (list, tuple, set, frozenset)):
            return unique_tags(v)
        return v

    def message_ids(self) -> set:
        return {m.id for m in self.messages}

    def field_values(self, fields: Iterable[str]) -> Dict[str, Any]:
        """Current values of the given fields"""
        return {f: getattr(self, f) for f in fields}

    def with_values(self, values: Dict[str, Any]) -> "Ticket":
        """Copy of this ticket with the given field values"""
        return self.model_copy(update=values)

    def is_sla_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.sla_due_at is None:
            return False
        now = now or datetime.now(dt_timezone.utc)
        return self.sla_due_at < now

    def visible_equals(self, other: "Ticket") -> bool:
        """Equality ignoring updated_at; decides whether a write is worth a re-render"""
        exclude = {"updated_at", "tags"}
        return (
            self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)
            and same_value("tags", self.tags, other.tags)
        )


# Ticket fields an operator mutation may touch
MUTABLE_FIELDS = (
    "status",
    "priority",
    "assigned_agent",
    "category",
    "subject",
    "tags",
    "sla_due_at",
)


def wire_name(field: str) -> str:
    """camelCase name of a Ticket field"""
    info = Ticket.model_fields.get(field)
    if info is not None and info.alias:
        return info.alias
    return field


class TicketDelta(BaseModel):
    """
    Proposed change to a ticket.

    Only explicitly set fields count as part of the delta, so
    TicketDelta(assigned_agent=None) is an unassignment while TicketDelta()
    is empty. add_tags is resolved against the current tags as an ordered
    union; it cannot be combined with a full tags replacement.
    """
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    assigned_agent: Optional[str] = Field(None, alias="assignedAgent")
    category: Optional[str] = None
    subject: Optional[str] = None
    tags: Optional[List[str]] = None
    add_tags: Optional[List[str]] = Field(None, alias="addTags")
    sla_due_at: Optional[datetime] = Field(None, alias="slaDueAt")

    @field_validator("sla_due_at", mode="before")
    @classmethod
    def normalise_timestamp(cls, v: Any) -> Any:
        return to_utc(v)

    def changed_fields(self) -> List[str]:
        """Ticket fields this delta writes, in declaration order"""
        fields = []
        for name in MUTABLE_FIELDS:
            if name in self.model_fields_set:
                fields.append(name)
            elif name == "tags" and "add_tags" in self.model_fields_set:
                fields.append(name)
        return fields

    def is_empty(self) -> bool:
        return not self.changed_fields()

    def is_tag_addition(self) -> bool:
        return "add_tags" in self.model_fields_set

    def is_status_only(self) -> bool:
        return self.changed_fields() == ["status"]

    def is_assignment_only(self) -> bool:
        return self.changed_fields() == ["assigned_agent"]

    def resolve(self, ticket: Optional[Ticket] = None) -> Dict[str, Any]:
        """
        Field values this delta produces when applied to ticket.

        Args:
            ticket: Current cached ticket (None when not cached)

        Returns:
            Mapping of Ticket field name to new value
        """
        values = {}
        for name in self.changed_fields():
            if name == "tags" and self.is_tag_addition():
                current = ticket.tags if ticket is not None else []
                values[name] = unique_tags(list(current) + list(self.add_tags or []))
            elif name == "tags":
                values[name] = unique_tags(self.tags or [])
            else:
                values[name] = getattr(self, name)
        return values

    def to_payload(self, ticket: Optional[Ticket] = None) -> Dict[str, Any]:
        """Request body for the remote service"""
        return {wire_name(k): to_wire(v) for k, v in self.resolve(ticket).items()}


# ============================================================================
# Filters
# ============================================================================

class TicketFilter(BaseModel):
    """
    Active ticket filter criteria.

    key() is the canonical, order-independent Filter Key used to partition
    the cache. Search text and categories match case-insensitively and are
    stored lower-cased so equivalent filters share a key.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    statuses: FrozenSet[TicketStatus] = frozenset()
    priorities: FrozenSet[TicketPriority] = frozenset()
    assigned_agents: FrozenSet[str] = Field(frozenset(), alias="assignedAgents")
    categories: FrozenSet[str] = frozenset()
    tags: FrozenSet[str] = frozenset()
    search: Optional[str] = None
    created_from: Optional[datetime] = Field(None, alias="createdFrom")
    created_to: Optional[datetime] = Field(None, alias="createdTo")
    sla_overdue: bool = Field(False, alias="slaOverdue")

    @field_validator("search", mode="before")
    @classmethod
    def normalise_search(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None

    @field_validator("categories", mode="before")
    @classmethod
    def normalise_categories(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(str(c).strip().lower() for c in v if str(c).strip())

    @field_validator("tags", "assigned_agents", mode="before")
    @classmethod
    def normalise_strings(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(str(s).strip() for s in v if str(s).strip())

    @field_validator("created_from", "created_to", mode="before")
    @classmethod
    def normalise_timestamp(cls, v: Any) -> Any:
        return to_utc(v)

    def key(self) -> str:
        """Canonical Filter Key"""
        criteria: Dict[str, Any] = {}
        if self.statuses:
            criteria["status"] = sorted(s.value for s in self.statuses)
        if self.priorities:
            criteria["priority"] = sorted(p.value for p in self.priorities)
        if self.assigned_agents:
            criteria["assignedAgent"] = sorted(self.assigned_agents)
        if self.categories:
            criteria["category"] = sorted(self.categories)
        if self.tags:
            criteria["tags"] = sorted(self.tags)
        if self.search:
            criteria["search"] = self.search
        if self.created_from:
            criteria["createdFrom"] = self.created_from.isoformat()
        if self.created_to:
            criteria["createdTo"] = self.created_to.isoformat()
        if self.sla_overdue:
            criteria["slaOverdue"] = True
        return "tickets:list:" + json.dumps(criteria, sort_keys=True, separators=(",", ":"))

    def matches(self, ticket: Ticket, now: Optional[datetime] = None) -> bool:
        """Whether ticket belongs in the list described by this filter"""
        if self.statuses and ticket.status not in self.statuses:
            return False
        if self.priorities and ticket.priority not in self.priorities:
            return False
        if self.assigned_agents and ticket.assigned_agent not in self.assigned_agents:
            return False
        if self.categories:
            category = (ticket.category or "").lower()
            if category not in self.categories:
                return False
        if self.tags and not any(tag in self.tags for tag in ticket.tags):
            return False
        if self.search:
            searchable = " ".join(
                [ticket.id, ticket.subject, ticket.category or "",
                 ticket.priority.value, ticket.status.value] + list(ticket.tags)
            ).lower()
            if self.search not in searchable:
                return False
        if self.created_from or self.created_to:
            if ticket.created_at is None:
                return False
            if self.created_from and ticket.created_at < self.created_from:
                return False
            if self.created_to and ticket.created_at > self.created_to:
                return False
        if self.sla_overdue and not ticket.is_sla_overdue(now):
            return False
        return True

    def to_query_params(self) -> Dict[str, str]:
        """Query parameters for a list request"""
        params = {}
        if self.statuses:
            params["status"] = ",".join(sorted(s.value for s in self.statuses))
        if self.priorities:
            params["priority"] = ",".join(sorted(p.value for p in self.priorities))
        if self.assigned_agents:
            params["assignedTo"] = ",".join(sorted(self.assigned_agents))
        if self.categories:
            params["category"] = ",".join(sorted(self.categories))
        if self.tags:
            params["tags"] = ",".join(sorted(self.tags))
        if self.search:
            params["search"] = self.search
        if self.created_from:
            params["dateFrom"] = self.created_from.isoformat()
        if self.created_to:
            params["dateTo"] = self.created_to.isoformat()
        if self.sla_overdue:
            params["slaOverdue"] = "true"
        return params


# ============================================================================
# Push events
# ============================================================================

# Original wire events folded into the four event kinds
_EVENT_ALIASES = {
    "assigned": ("updated", None),
    "escalated": ("status_changed", TicketStatus.ESCALATED.value),
    "resolved": ("status_changed", TicketStatus.DONE.value),
}


class TicketEvent(BaseModel):
    """
    Change notification from the event source.

    Accepts both bare type names ("created") and prefixed wire names
    ("ticket:created").
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: EventType
    ticket_id: str = Field(..., alias="ticketId", min_length=1)
    ticket: Optional[Ticket] = None
    message: Optional[TicketMessage] = None
    new_status: Optional[TicketStatus] = Field(None, alias="newStatus")
    assigned_to: Optional[str] = Field(None, alias="assignedTo")
    timestamp: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def normalise_type(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        event_type = str(data.get("type", ""))
        if event_type.startswith("ticket:"):
            event_type = event_type[len("ticket:"):]
        if event_type in _EVENT_ALIASES:
            event_type, status = _EVENT_ALIASES[event_type]
            if status and not (data.get("newStatus") or data.get("new_status")):
                data["newStatus"] = status
        data["type"] = event_type

        ticket = data.get("ticket")
        if not (data.get("ticketId") or data.get("ticket_id")) and isinstance(ticket, dict):
            if ticket.get("id"):
                data["ticketId"] = ticket["id"]
        return data

    @field_validator("timestamp", mode="before")
    @classmethod
    def normalise_timestamp(cls, v: Any) -> Any:
        return to_utc(v)

    @model_validator(mode="after")
    def check_consistency(self) -> "TicketEvent":
        if self.ticket is not None and self.ticket.id != self.ticket_id:
            raise ValueError(
                f"ticket payload id {self.ticket.id} does not match ticketId {self.ticket_id}"
            )
        if self.type == EventType.MESSAGE_ADDED and self.message is None and self.ticket is None:
            raise ValueError("message_added event carries neither message nor ticket")
        return self


# ============================================================================
# Merge
# ============================================================================

# Fields compared between merge source and target
MERGE_FIELDS = ("status", "priority", "assigned_agent")


class MergeConflict(BaseModel):
    """A field whose value differs between merge source and target"""
    model_config = ConfigDict(populate_by_name=True)

    field: str
    source_value: Any = Field(None, alias="sourceValue")
    target_value: Any = Field(None, alias="targetValue")
    resolution: Literal["source", "target"] = "target"

    @property
    def resolved_value(self) -> Any:
        return self.source_value if self.resolution == "source" else self.target_value

    def toggle(self) -> None:
        self.resolution = "source" if self.resolution == "target" else "target"


class MergeOptions(BaseModel):
    """What the merge carries over from the source tickets"""
    model_config = ConfigDict(populate_by_name=True)

    keep_source_messages: bool = Field(True, alias="keepSourceMessages")
    keep_source_tags: bool = Field(True, alias="keepSourceTags")
    merge_notes: bool = Field(True, alias="mergeNotes")

    def to_payload(self) -> Dict[str, bool]:
        return self.model_dump(by_alias=True)


# ============================================================================
# Remote responses
# ============================================================================

class PerItemResult(BaseModel):
    """Per-ticket outcome reported by the bulk update endpoint"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ticket_id: str = Field(..., alias="ticketId")
    success: bool
    ticket: Optional[Ticket] = None
    error: Optional[str] = None


class MergeResponse(BaseModel):
    """Result of a successful merge call"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    merged_ticket: Ticket = Field(..., alias="mergedTicket")
    deleted_ticket_ids: List[str] = Field(default_factory=list, alias="deletedTicketIds")
