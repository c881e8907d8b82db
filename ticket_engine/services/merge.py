"""
Merge Workflow

State machine for collapsing several source tickets into one target:

    selecting_target -> conflict_review -> confirmed | cancelled

Conflicts are computed between the first source and the target over
MERGE_FIELDS. The merge is applied to the cache only after the service
confirms it; nothing is applied optimistically.
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional

from ticket_engine.models.errors import ConflictStateError, TicketEngineError, ValidationError
from ticket_engine.models.results import MergeOutcome
from ticket_engine.models.schemas import MERGE_FIELDS, MergeConflict, MergeOptions, Ticket
from ticket_engine.services.mutation_client import TicketServiceClient
from ticket_engine.services.reconciler import Reconciler
from ticket_engine.utils.logger import get_logger
from ticket_engine.utils.validators import validate_merge_selection, validate_ticket_id

logger = get_logger(__name__)


class MergeState(str, Enum):
    SELECTING_TARGET = "selecting_target"
    CONFLICT_REVIEW = "conflict_review"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


def detect_conflicts(source: Ticket, target: Ticket) -> List[MergeConflict]:
    """
    Compare source and target over the merge fields

    Args:
        source: First source ticket
        target: Merge target

    Returns:
        One conflict per differing field, each resolved to target
    """
    conflicts = []
    for field in MERGE_FIELDS:
        source_value = getattr(source, field)
        target_value = getattr(target, field)
        if source_value != target_value:
            conflicts.append(MergeConflict(
                field=field,
                source_value=source_value,
                target_value=target_value
            ))
    return conflicts


class MergeWorkflow:
    """
    One merge from target selection to confirmation.

    Args:
        source_ids: Tickets merged away (at least two)
        client: Ticket service client
        reconciler: Reconciler receiving the merge result
        options: Carry-over options (all enabled by default)

    Raises:
        ValidationError: Fewer than two sources selected
    """

    def __init__(
        self,
        source_ids: Iterable[str],
        client: TicketServiceClient,
        reconciler: Reconciler,
        options: Optional[MergeOptions] = None
    ):
        self.source_ids = validate_merge_selection(source_ids)
        self.client = client
        self.reconciler = reconciler
        self.options = options or MergeOptions()

        self.state = MergeState.SELECTING_TARGET
        self.target_id: Optional[str] = None
        self.source: Optional[Ticket] = None
        self.target: Optional[Ticket] = None
        self.conflicts: List[MergeConflict] = []
        self.last_error: Optional[TicketEngineError] = None

    @property
    def store(self):
        return self.reconciler.store

    async def _load(self, ticket_id: str) -> Ticket:
        """Fetch a ticket, falling back to the cached copy"""
        try:
            ticket = await self.client.get_ticket(ticket_id)
        except TicketEngineError as e:
            cached = self.store.get_detail(ticket_id)
            if cached is None:
                raise ConflictStateError(
                    f"Could not load ticket for merge: {e.message}", ticket_id=ticket_id
                ) from e
            logger.warning(f"Using cached ticket {ticket_id} for merge: {e}")
            return cached
        return self.reconciler.apply_detail(ticket)

    async def select_target(self, target_id: str) -> List[MergeConflict]:
        """
        Choose the surviving ticket and compute conflicts

        Args:
            target_id: Ticket the sources are merged into

        Returns:
            Conflicts between the first source and the target

        Raises:
            ValidationError: Target is one of the sources
            ConflictStateError: Source or target could not be loaded
        """
        self._require_open()
        target_id = validate_ticket_id(target_id)
        validate_merge_selection(self.source_ids, target_id)

        self.target_id = target_id
        self.state = MergeState.CONFLICT_REVIEW
        self.conflicts = []
        self.source = await self._load(self.source_ids[0])
        self.target = await self._load(target_id)
        self.conflicts = detect_conflicts(self.source, self.target)
        logger.info(
            f"Merge of {len(self.source_ids)} ticket(s) into {target_id}: "
            f"{len(self.conflicts)} conflict(s)"
        )
        return self.conflicts

    def _require_open(self) -> None:
        if self.state in (MergeState.CONFIRMED, MergeState.CANCELLED):
            raise ConflictStateError(f"Merge workflow is already {self.state.value}")

    def _require_review(self) -> None:
        if self.state != MergeState.CONFLICT_REVIEW:
            raise ConflictStateError(
                f"Merge workflow is {self.state.value}, not in conflict review"
            )

    def conflict(self, field: str) -> MergeConflict:
        for conflict in self.conflicts:
            if conflict.field == field:
                return conflict
        raise ValidationError(f"No merge conflict on field {field}")

    def resolve(self, field: str, resolution: Literal["source", "target"]) -> MergeConflict:
        """Pick the source or target value for a conflicting field"""
        self._require_review()
        if resolution not in ("source", "target"):
            raise ValidationError(f"Unknown merge resolution {resolution!r}")
        conflict = self.conflict(field)
        conflict.resolution = resolution
        return conflict

    def toggle(self, field: str) -> MergeConflict:
        self._require_review()
        conflict = self.conflict(field)
        conflict.toggle()
        return conflict

    def set_option(self, name: str, value: bool) -> MergeOptions:
        """Toggle one carry-over option by field name or wire name"""
        self._require_open()
        fields = MergeOptions.model_fields
        if name not in fields:
            name = next((k for k, v in fields.items() if v.alias == name), name)
        if name not in fields:
            raise ValidationError(f"Unknown merge option {name}")
        self.options = self.options.model_copy(update={name: bool(value)})
        return self.options

    def resolved_fields(self) -> Dict[str, Any]:
        return {c.field: c.resolved_value for c in self.conflicts}

    def _recheck_conflicts(self) -> None:
        """
        Re-run detection against the cache before sending.

        Raises ConflictStateError if a field conflicts now that did not
        during review. Existing choices carry over to refreshed values.
        """
        source = self.store.get_detail(self.source_ids[0]) or self.source
        target = self.store.get_detail(self.target_id) or self.target
        if source is None or target is None:
            raise ConflictStateError("Merge tickets are no longer loaded", ticket_id=self.target_id)

        current = detect_conflicts(source, target)
        reviewed = {c.field: c for c in self.conflicts}
        new_fields = [c.field for c in current if c.field not in reviewed]
        if new_fields:
            self.source, self.target = source, target
            for conflict in current:
                if conflict.field in reviewed:
                    conflict.resolution = reviewed[conflict.field].resolution
            self.conflicts = current
            raise ConflictStateError(
                f"New merge conflicts on {', '.join(new_fields)}; review again",
                ticket_id=self.target_id
            )

        for conflict in current:
            conflict.resolution = reviewed[conflict.field].resolution
        self.source, self.target = source, target
        self.conflicts = current

    async def confirm(self) -> MergeOutcome:
        """
        Issue the merge mutation

        Returns:
            Outcome with the merged ticket, or the error; on failure the
            workflow stays in conflict review
        """
        outcome = MergeOutcome(target_id=self.target_id or "", source_ids=list(self.source_ids))
        try:
            self._require_review()
            self._recheck_conflicts()
            response = await self.client.merge_tickets(
                self.source_ids,
                self.target_id,
                self.options,
                self.resolved_fields()
            )
        except TicketEngineError as e:
            self.last_error = e
            outcome.error = e
            logger.error(f"Merge into {self.target_id} failed: {e}")
            return outcome

        # Service may omit deleted ids; every source is gone after a merge
        deleted = response.deleted_ticket_ids or list(self.source_ids)
        self.reconciler.apply_merge(response.merged_ticket, deleted)
        self.state = MergeState.CONFIRMED
        self.conflicts = []
        self.last_error = None
        outcome.ticket = self.store.get_detail(response.merged_ticket.id) or response.merged_ticket
        outcome.deleted_ticket_ids = list(deleted)
        logger.info(f"Merged {len(self.source_ids)} ticket(s) into {self.target_id}")
        return outcome

    def cancel(self) -> None:
        """Close the workflow, discarding conflicts"""
        if self.state == MergeState.CONFIRMED:
            return
        self.state = MergeState.CANCELLED
        self.conflicts = []
        self.source = None
        self.target = None
