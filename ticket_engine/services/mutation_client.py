"""
Ticket Service Client

Request/response client for the remote ticket service:
- Single ticket updates, status changes and assignment
- Bulk updates with per-ticket results
- Ticket merge
- Detail and list fetches with retry logic

Every failure leaves this module as a TicketEngineError; no httpx exception
reaches the caller. Mutations are sent once; only the read path retries.
"""
import asyncio
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ticket_engine.config import get_settings
from ticket_engine.models.errors import TransientNetworkError, ValidationError
from ticket_engine.models.schemas import (
    MergeOptions,
    MergeResponse,
    PerItemResult,
    Ticket,
    TicketDelta,
    TicketFilter,
    to_wire,
    wire_name,
)
from ticket_engine.utils.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class TicketServiceClient:
    """
    Ticket service API integration with error conversion
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None
    ):
        settings = get_settings()
        base_url = base_url or settings.ticket_api_base_url
        self.base_url = f"{base_url.rstrip('/')}/api"
        self.api_token = api_token if api_token is not None else settings.ticket_api_token
        self.headers = {
            "Content-Type": "application/json"
        }
        if self.api_token:
            self.headers["Authorization"] = f"Bearer {self.api_token}"
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.page_size = settings.list_page_size

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        retry: bool = False,
        ticket_id: Optional[str] = None,
        **kwargs
    ) -> Any:
        """
        Make HTTP request, optionally with retry logic

        Args:
            method: HTTP method (GET, POST, PUT, etc.)
            endpoint: API endpoint
            retry: Retry rate limits, server errors and transport failures
            ticket_id: Ticket the request concerns, attached to errors
            **kwargs: Additional arguments for httpx

        Returns:
            Response payload with the {success, data} envelope removed

        Raises:
            TransientNetworkError: Connectivity failure, rate limit or server error
            ValidationError: Request rejected by the service (other 4xx)
        """
        url = f"{self.base_url}/{endpoint}"
        attempts = max(self.max_retries, 1) if retry else 1

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self.headers,
                        **kwargs
                    )
                    response.raise_for_status()
                    return self._unwrap(response.json(), ticket_id)

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code in RETRYABLE_STATUS_CODES:
                    if attempt < attempts - 1:
                        await self._backoff(attempt, attempts, e)
                        continue
                    raise TransientNetworkError(
                        f"{method} {endpoint} failed with status {status_code}",
                        ticket_id=ticket_id,
                        status_code=status_code
                    ) from e
                raise ValidationError(
                    self._error_message(e.response),
                    ticket_id=ticket_id,
                    status_code=status_code
                ) from e

            except httpx.TransportError as e:
                if attempt < attempts - 1:
                    await self._backoff(attempt, attempts, e)
                    continue
                logger.error(f"Request failed: {e}")
                raise TransientNetworkError(
                    f"{method} {endpoint} could not reach the ticket service: {e}",
                    ticket_id=ticket_id
                ) from e

            except ValueError as e:
                logger.error(f"Undecodable response from {endpoint}: {e}")
                raise TransientNetworkError(
                    f"{method} {endpoint} returned an invalid body",
                    ticket_id=ticket_id
                ) from e

    async def _backoff(self, attempt: int, attempts: int, error: Exception) -> None:
        wait_time = 2 ** attempt  # Exponential backoff
        logger.warning(
            f"Request failed (attempt {attempt + 1}/{attempts}), "
            f"retrying in {wait_time}s: {error}"
        )
        await asyncio.sleep(wait_time)

    @staticmethod
    def _unwrap(body: Any, ticket_id: Optional[str] = None) -> Any:
        if isinstance(body, dict) and "success" in body:
            if body.get("success") is False:
                raise ValidationError(
                    body.get("message") or "Request rejected by the ticket service",
                    ticket_id=ticket_id
                )
            return body.get("data")
        return body

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            if isinstance(message, dict):
                message = message.get("message")
            if isinstance(message, str) and message:
                return message
        return f"Request rejected with status {response.status_code}"

    @staticmethod
    def _parse_ticket(data: Any, ticket_id: Optional[str] = None) -> Ticket:
        try:
            return Ticket.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Malformed ticket in response: {e.error_count()} error(s)")
            raise TransientNetworkError(
                "Ticket service returned a malformed ticket",
                ticket_id=ticket_id
            ) from e

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    async def get_ticket(self, ticket_id: str) -> Ticket:
        """
        Get ticket details by ID

        Args:
            ticket_id: Ticket ID

        Returns:
            Ticket with full details
        """
        logger.info(f"Fetching ticket {ticket_id}")
        data = await self._make_request(
            "GET", f"tickets/{ticket_id}", retry=True, ticket_id=ticket_id
        )
        return self._parse_ticket(data, ticket_id)

    async def list_tickets(
        self,
        ticket_filter: Optional[TicketFilter] = None,
        per_page: Optional[int] = None,
        max_tickets: Optional[int] = None
    ) -> List[Ticket]:
        """
        Fetch all tickets matching a filter with pagination

        Args:
            ticket_filter: Active filter (None = all tickets)
            per_page: Number of tickets per page (max 100)
            max_tickets: Maximum number of tickets to fetch (None = all pages)

        Returns:
            Tickets in server order
        """
        all_tickets: List[Ticket] = []
        page = 1
        per_page = min(per_page or self.page_size, 100)
        base_params = ticket_filter.to_query_params() if ticket_filter else {}

        while True:
            params = dict(base_params, page=page, limit=per_page)
            logger.info(f"Fetching tickets (page={page}, per_page={per_page})")
            data = await self._make_request("GET", "tickets", retry=True, params=params)

            if isinstance(data, dict):
                data = data.get("tickets") or data.get("items") or []
            if not data:
                break

            all_tickets.extend(self._parse_ticket(item) for item in data)

            if max_tickets and len(all_tickets) >= max_tickets:
                all_tickets = all_tickets[:max_tickets]
                break

            # Less than per_page means last page
            if len(data) < per_page:
                break

            page += 1

        logger.info(f"Fetched total {len(all_tickets)} tickets")
        return all_tickets

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #
    async def update_ticket(
        self,
        ticket_id: str,
        delta: TicketDelta,
        current: Optional[Ticket] = None
    ) -> Ticket:
        """
        Update ticket fields

        Args:
            ticket_id: Ticket ID
            delta: Fields to change
            current: Cached ticket, used to resolve tag additions

        Returns:
            Updated ticket as stored by the service
        """
        if delta.is_status_only():
            logger.info(f"Changing status of ticket {ticket_id} to {delta.status.value}")
            data = await self._make_request(
                "POST",
                f"tickets/{ticket_id}/status",
                ticket_id=ticket_id,
                json={"status": delta.status.value}
            )
        else:
            payload = delta.to_payload(current)
            logger.info(f"Updating ticket {ticket_id} with {len(payload)} fields")
            data = await self._make_request(
                "PUT",
                f"tickets/{ticket_id}",
                ticket_id=ticket_id,
                json=payload
            )
        return self._parse_ticket(data, ticket_id)

    async def assign_ticket(self, ticket_id: str, agent_id: str) -> Ticket:
        """
        Assign a ticket to an agent

        Args:
            ticket_id: Ticket ID
            agent_id: Agent reference

        Returns:
            Updated ticket
        """
        logger.info(f"Assigning ticket {ticket_id} to {agent_id}")
        data = await self._make_request(
            "POST",
            f"tickets/{ticket_id}/assign",
            ticket_id=ticket_id,
            json={"agentId": agent_id}
        )
        return self._parse_ticket(data, ticket_id)

    async def bulk_update(
        self,
        ticket_ids: Iterable[str],
        delta: TicketDelta
    ) -> List[PerItemResult]:
        """
        Apply one delta to many tickets in a single request

        Args:
            ticket_ids: Tickets to update
            delta: Fields to change; must not be a tag addition

        Returns:
            One result per requested ticket

        Raises:
            ValidationError: Tag addition, which needs a base ticket per item
        """
        if delta.is_tag_addition():
            raise ValidationError("Tag additions cannot be sent through the bulk endpoint")
        ticket_ids = list(ticket_ids)
        logger.info(f"Bulk updating {len(ticket_ids)} tickets")
        data = await self._make_request(
            "POST",
            "tickets/bulk/update",
            json={"ticketIds": ticket_ids, "updates": delta.to_payload()}
        )

        if isinstance(data, dict):
            data = data.get("results")
        if not isinstance(data, list):
            # Service acknowledged the batch without per-item detail
            return [PerItemResult(ticket_id=i, success=True) for i in ticket_ids]

        try:
            results = [PerItemResult.model_validate(item) for item in data]
        except PydanticValidationError as e:
            raise TransientNetworkError("Ticket service returned malformed bulk results") from e

        reported = {r.ticket_id for r in results}
        for ticket_id in ticket_ids:
            if ticket_id not in reported:
                results.append(PerItemResult(
                    ticket_id=ticket_id, success=False, error="No result reported"
                ))
        return results

    async def merge_tickets(
        self,
        source_ids: Iterable[str],
        target_id: str,
        options: Optional[MergeOptions] = None,
        resolved_fields: Optional[Dict[str, Any]] = None
    ) -> MergeResponse:
        """
        Merge source tickets into a target ticket

        Args:
            source_ids: Tickets merged away
            target_id: Ticket that survives
            options: Carry-over options
            resolved_fields: Field values chosen during conflict review

        Returns:
            Merged ticket and the ids the service deleted
        """
        source_ids = list(source_ids)
        options = options or MergeOptions()
        payload = {
            "sourceTicketIds": source_ids,
            "targetTicketId": target_id,
            "options": options.to_payload(),
        }
        if resolved_fields:
            payload["resolvedFields"] = {
                wire_name(k): to_wire(v) for k, v in resolved_fields.items()
            }

        logger.info(f"Merging {len(source_ids)} ticket(s) into {target_id}")
        data = await self._make_request(
            "POST", "tickets/merge", ticket_id=target_id, json=payload
        )
        try:
            return MergeResponse.model_validate(data)
        except PydanticValidationError as e:
            raise TransientNetworkError(
                "Ticket service returned a malformed merge result", ticket_id=target_id
            ) from e
