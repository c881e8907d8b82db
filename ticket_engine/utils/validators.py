"""
Input validation utilities

Everything here runs before dispatch: a failure means no network call and
no optimistic apply.
"""
from typing import Dict, Iterable, List, Optional

from ticket_engine.models.errors import ValidationError
from ticket_engine.models.schemas import MERGE_FIELDS, TicketDelta


def validate_ticket_id(ticket_id: str) -> str:
    """
    Validate a ticket identifier

    Args:
        ticket_id: Ticket ID to validate

    Returns:
        Stripped ticket ID

    Raises:
        ValidationError: If the ID is empty
    """
    if ticket_id is None or not str(ticket_id).strip():
        raise ValidationError("Ticket ID must not be empty")
    return str(ticket_id).strip()


def validate_ticket_ids(ticket_ids: Iterable[str]) -> List[str]:
    """
    Validate and de-duplicate a selection of ticket IDs

    Args:
        ticket_ids: Selected IDs

    Returns:
        Unique IDs in selection order

    Raises:
        ValidationError: If the selection is empty or holds an empty ID
    """
    seen = set()
    result = []
    for ticket_id in ticket_ids or []:
        ticket_id = validate_ticket_id(ticket_id)
        if ticket_id not in seen:
            seen.add(ticket_id)
            result.append(ticket_id)
    if not result:
        raise ValidationError("At least one ticket must be selected")
    return result


def validate_delta(delta: TicketDelta) -> TicketDelta:
    """
    Validate a ticket delta

    Args:
        delta: Proposed change

    Returns:
        The same delta

    Raises:
        ValidationError: If the delta is empty, adds no usable tag, or mixes
            tag addition with tag replacement
    """
    if delta is None or delta.is_empty():
        raise ValidationError("Update must change at least one field")
    if delta.is_tag_addition():
        if "tags" in delta.model_fields_set:
            raise ValidationError("Tag addition cannot be combined with a tag replacement")
        tags = [t for t in (delta.add_tags or []) if str(t).strip()]
        if not tags:
            raise ValidationError("Tag addition requires at least one non-empty tag")
    if "subject" in delta.model_fields_set and not (delta.subject or "").strip():
        raise ValidationError("Subject must not be empty")
    return delta


def validate_merge_selection(source_ids: Iterable[str], target_id: str = None) -> List[str]:
    """
    Validate merge sources (and target when already chosen)

    Args:
        source_ids: Tickets to merge away
        target_id: Ticket that survives the merge (optional)

    Returns:
        Unique source IDs in selection order

    Raises:
        ValidationError: Fewer than two sources, or target among the sources
    """
    sources = validate_ticket_ids(source_ids)
    if len(sources) < 2:
        raise ValidationError("Merging requires at least two selected tickets")
    if target_id is not None:
        target_id = validate_ticket_id(target_id)
        if target_id in sources:
            raise ValidationError(
                "Merge target cannot also be a source", ticket_id=target_id
            )
    return sources


def validate_merge_resolutions(resolutions: Optional[Dict[str, str]]) -> Dict[str, str]:
    """
    Validate preset conflict resolutions for a non-interactive merge

    Args:
        resolutions: Field -> "source" | "target"

    Returns:
        The resolutions (empty dict for None)

    Raises:
        ValidationError: Field not compared on merge, or unknown choice
    """
    resolutions = dict(resolutions or {})
    for field, resolution in resolutions.items():
        if field not in MERGE_FIELDS:
            raise ValidationError(f"Field {field!r} is not resolved on merge")
        if resolution not in ("source", "target"):
            raise ValidationError(f"Unknown merge resolution {resolution!r} for {field}")
    return resolutions
