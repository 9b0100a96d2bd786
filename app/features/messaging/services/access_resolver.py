"""
Access & representation resolver.

Decides whether a caller may open a conversation anchored to an
application, job or company, and whether a candidate counterpart is
currently represented by a recruiter who should receive the conversation
instead.
"""

from app.features.messaging.domain import (
    AccessContext,
    AccessDenied,
    ConversationContext,
    NotFound,
    RepresentationRoute,
)
from app.features.messaging.repository import AccessRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AccessResolver:
    def __init__(self, repository: AccessRepository):
        self.repository = repository

    async def load_access_context(self, user_id: str) -> AccessContext:
        access = await self.repository.load_access_context(user_id)
        if not access:
            logger.warning("No identity user for authenticated subject", user_id=user_id)
            raise AccessDenied("Unable to resolve identity user")
        return access

    async def assert_context_access(
        self, access: AccessContext, context: ConversationContext | None
    ) -> None:
        """
        Raise AccessDenied unless the caller has a relationship to the context.

        Only the most specific anchor is checked: application, then job,
        then company. No anchor means nothing to check here.
        """
        if context is None or context.is_empty():
            return

        if context.application_id:
            if await self._can_access_application(access, context.application_id):
                return
            raise AccessDenied("Not authorized for application context")

        if context.job_id:
            if await self._can_access_job(access, context.job_id):
                return
            raise AccessDenied("Not authorized for job context")

        if context.company_id:
            if await self._can_access_company(access, context.company_id):
                return
            raise AccessDenied("Not authorized for company context")

    async def _can_access_application(self, access: AccessContext, application_id: str) -> bool:
        application = await self.repository.get_application(application_id)
        if not application:
            raise NotFound("Application not found")

        if access.candidate_id and application["candidate_id"] == access.candidate_id:
            return True
        if access.recruiter_id and application["recruiter_id"] == access.recruiter_id:
            return True
        organization_id = application.get("organization_id")
        return bool(organization_id and organization_id in access.organization_ids)

    async def _can_access_job(self, access: AccessContext, job_id: str) -> bool:
        job = await self.repository.get_job(job_id)
        if not job:
            raise NotFound("Job not found")

        organization_id = job.get("organization_id")
        if organization_id and organization_id in access.organization_ids:
            return True
        if access.recruiter_id and await self.repository.has_active_job_assignment(
            job_id, access.recruiter_id
        ):
            return True
        if access.candidate_id and await self.repository.has_application_for_job(
            job_id, access.candidate_id
        ):
            return True
        return False

    async def _can_access_company(self, access: AccessContext, company_id: str) -> bool:
        company = await self.repository.get_company(company_id)
        if not company:
            raise NotFound("Company not found")

        organization_id = company.get("organization_id")
        if organization_id and organization_id in access.organization_ids:
            return True
        if access.recruiter_id:
            return await self.repository.has_active_company_assignment(
                company_id, access.recruiter_id
            )
        return False

    async def resolve_representation(
        self, candidate_user_id: str, sender_id: str
    ) -> RepresentationRoute:
        """The recruiter a conversation should be routed to, or routed=False."""
        representation = await self.repository.find_active_representation(candidate_user_id)
        if not representation:
            return RepresentationRoute.none()

        if representation["recruiter_user_id"] == sender_id:
            return RepresentationRoute.none()

        logger.info(
            "Conversation routed to representing recruiter",
            candidate_user_id=candidate_user_id,
            recruiter_user_id=representation["recruiter_user_id"],
        )
        return RepresentationRoute(
            routed=True,
            recruiter_user_id=representation["recruiter_user_id"],
            candidate_id=representation["candidate_id"],
            candidate_name=representation.get("candidate_name"),
            recruiter_name=representation.get("recruiter_name"),
        )
