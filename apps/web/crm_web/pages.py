from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from crm_web.errors import ClientError, ErrorReport, ErrorReporter, FormError, describe_error
from crm_web.http import RequestPipeline
from crm_web.session import ClientSessionStore


logger = logging.getLogger("crm_web.pages")

Record = dict[str, Any]


class ResourceClient:
    def __init__(self, pipeline: RequestPipeline, path: str) -> None:
        self._pipeline = pipeline
        self.path = path

    async def list(self) -> list[Record]:
        return await self._pipeline.get(self.path) or []

    async def create(self, data: Record) -> Record:
        return await self._pipeline.post(self.path, json=data)

    async def update(self, record_id: str, data: Record) -> Record:
        return await self._pipeline.put(f"{self.path}/{record_id}", json=data)

    async def delete(self, record_id: str) -> None:
        await self._pipeline.delete(f"{self.path}/{record_id}")


class UserClient(ResourceClient):
    async def toggle_status(self, user_id: str) -> Record:
        return await self._pipeline.patch(f"{self.path}/{user_id}/toggle-status")


class CrmClient:
    def __init__(self, pipeline: RequestPipeline) -> None:
        self.customers = ResourceClient(pipeline, "/api/customers")
        self.contacts = ResourceClient(pipeline, "/api/contacts")
        self.deals = ResourceClient(pipeline, "/api/deals")
        self.users = UserClient(pipeline, "/api/users")
        self.assignments = ResourceClient(pipeline, "/api/assignments")


@dataclass
class DashboardSummary:
    total_customers: int = 0
    total_contacts: int = 0
    total_deals: int = 0
    recent_deals: list[Record] = field(default_factory=list)


@dataclass
class TaskAssignmentData:
    agents: list[Record]
    deals: list[Record]
    assignments: list[Record]


class DataLoadError(ClientError):
    def __init__(self, report: ErrorReport) -> None:
        self.report = report
        self.message = report.message
        super().__init__(report.message)


async def load_dashboard(crm: CrmClient) -> DashboardSummary:
    """Counts and the five most recent deals; a failed fetch counts as empty."""
    names = ("customers", "contacts", "deals")
    results = await asyncio.gather(
        crm.customers.list(),
        crm.contacts.list(),
        crm.deals.list(),
        return_exceptions=True,
    )
    lists: list[list[Record]] = []
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            logger.warning("dashboard.fetch_failed", extra={"path": f"/api/{name}", "error": describe_error(result)})
            lists.append([])
        else:
            lists.append(result)
    customers, contacts, deals = lists
    return DashboardSummary(
        total_customers=len(customers),
        total_contacts=len(contacts),
        total_deals=len(deals),
        recent_deals=deals[:5],
    )


async def load_task_assignment(crm: CrmClient, reporter: ErrorReporter) -> TaskAssignmentData:
    fetches = [
        asyncio.ensure_future(crm.users.list()),
        asyncio.ensure_future(crm.deals.list()),
        asyncio.ensure_future(crm.assignments.list()),
    ]
    try:
        users, deals, assignments = await asyncio.gather(*fetches)
    except (ClientError, httpx.HTTPError) as exc:
        report = reporter.show(
            "Failed to Load Data",
            "Could not retrieve the necessary data.",
            describe_error(exc),
        )
        raise DataLoadError(report) from exc
    finally:
        # Any failure aborts the page; drop the fetches still in flight.
        for fetch in fetches:
            fetch.cancel()
        await asyncio.gather(*fetches, return_exceptions=True)
    agents = [user for user in users if user.get("role") == "agent"]
    return TaskAssignmentData(agents=agents, deals=deals, assignments=assignments)


async def assign_task(
    crm: CrmClient,
    store: ClientSessionStore,
    agent_id: str | None,
    deal_id: str | None,
) -> Record:
    if not agent_id or not deal_id:
        raise FormError("Please select both an agent and a deal")
    assigned_by = store.user.id if store.user is not None else None
    assignment = await crm.assignments.create({"user_id": agent_id, "deal_id": deal_id, "assigned_by": assigned_by})
    logger.info("task.assigned", extra={"user_id": assigned_by})
    return assignment


RESOURCE_NOUNS = {
    "/api/customers": ("Customers", "customer"),
    "/api/contacts": ("Contacts", "contact"),
    "/api/deals": ("Deals", "deal"),
    "/api/users": ("Users", "user"),
    "/api/assignments": ("Assignments", "assignment"),
}


def _nouns(resource: ResourceClient) -> tuple[str, str]:
    return RESOURCE_NOUNS.get(resource.path, ("Records", "record"))


async def load_resource(resource: ResourceClient, reporter: ErrorReporter) -> list[Record]:
    """List page loader: a failure is reported and the page renders empty."""
    try:
        return await resource.list()
    except (ClientError, httpx.HTTPError) as exc:
        plural, singular = _nouns(resource)
        reporter.show(f"Failed to Load {plural}", f"Could not retrieve the {singular} list.", describe_error(exc))
        return []


async def delete_record(resource: ResourceClient, reporter: ErrorReporter, record_id: str) -> bool:
    try:
        await resource.delete(record_id)
    except (ClientError, httpx.HTTPError) as exc:
        _, singular = _nouns(resource)
        reporter.show("Delete Failed", f"Could not delete the {singular}.", describe_error(exc))
        return False
    return True


async def toggle_user_status(users: UserClient, reporter: ErrorReporter, user_id: str) -> Record | None:
    try:
        return await users.toggle_status(user_id)
    except (ClientError, httpx.HTTPError) as exc:
        reporter.show("Status Update Failed", "Could not update user status.", describe_error(exc))
        return None
