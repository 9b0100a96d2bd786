"""
Read-only queries against identity and recruiting tables owned by other
services. Used to build the caller's AccessContext and to decide context
access and representation routing.
"""

from typing import Any

from app.db.helpers import fetch_one, fetch_val, with_db_retry
from app.features.messaging.domain import AccessContext

from .base import as_str

PLATFORM_ADMIN_ROLE = "platform_admin"


class AccessRepository:
    @with_db_retry(max_retries=2)
    async def load_access_context(self, user_id: str) -> AccessContext | None:
        row = await fetch_one(
            """
            SELECT
                u.id AS user_id,
                (SELECT c.id FROM candidates c WHERE c.user_id = u.id LIMIT 1) AS candidate_id,
                (SELECT r.id FROM recruiters r
                    WHERE r.user_id = u.id AND r.status = 'active' LIMIT 1) AS recruiter_id,
                COALESCE(
                    (SELECT array_agg(DISTINCT m.organization_id) FROM memberships m
                        WHERE m.user_id = u.id AND m.organization_id IS NOT NULL),
                    '{}'::uuid[]
                ) AS organization_ids,
                EXISTS (
                    SELECT 1 FROM memberships m
                    WHERE m.user_id = u.id AND m.role = %s
                ) AS is_platform_admin
            FROM users u
            WHERE u.id = %s
            """,
            (PLATFORM_ADMIN_ROLE, user_id),
        )
        if not row:
            return None

        return AccessContext(
            user_id=as_str(row["user_id"]),
            candidate_id=as_str(row.get("candidate_id")),
            recruiter_id=as_str(row.get("recruiter_id")),
            organization_ids=[as_str(org_id) for org_id in row.get("organization_ids") or []],
            is_platform_admin=bool(row.get("is_platform_admin")),
        )

    async def get_application(self, application_id: str) -> dict[str, Any] | None:
        """Application owners plus the organization that owns the job's company."""
        row = await fetch_one(
            """
            SELECT a.candidate_id, a.recruiter_id, a.job_id,
                   co.identity_organization_id AS organization_id
            FROM applications a
            LEFT JOIN jobs j ON j.id = a.job_id
            LEFT JOIN companies co ON co.id = j.company_id
            WHERE a.id = %s
            """,
            (application_id,),
        )
        if not row:
            return None
        return {key: as_str(value) for key, value in row.items()}

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        row = await fetch_one(
            """
            SELECT j.company_id, co.identity_organization_id AS organization_id
            FROM jobs j
            LEFT JOIN companies co ON co.id = j.company_id
            WHERE j.id = %s
            """,
            (job_id,),
        )
        if not row:
            return None
        return {key: as_str(value) for key, value in row.items()}

    async def get_company(self, company_id: str) -> dict[str, Any] | None:
        row = await fetch_one(
            "SELECT id, identity_organization_id AS organization_id FROM companies WHERE id = %s",
            (company_id,),
        )
        if not row:
            return None
        return {key: as_str(value) for key, value in row.items()}

    async def has_active_job_assignment(self, job_id: str, recruiter_id: str) -> bool:
        value = await fetch_val(
            """
            SELECT 1 AS assigned FROM role_assignments
            WHERE job_id = %s AND recruiter_user_id = %s AND status = 'active'
            LIMIT 1
            """,
            (job_id, recruiter_id),
        )
        return value is not None

    async def has_active_company_assignment(self, company_id: str, recruiter_id: str) -> bool:
        value = await fetch_val(
            """
            SELECT 1 AS assigned FROM role_assignments ra
            JOIN jobs j ON j.id = ra.job_id
            WHERE j.company_id = %s AND ra.recruiter_user_id = %s AND ra.status = 'active'
            LIMIT 1
            """,
            (company_id, recruiter_id),
        )
        return value is not None

    async def has_application_for_job(self, job_id: str, candidate_id: str) -> bool:
        value = await fetch_val(
            "SELECT 1 AS applied FROM applications WHERE job_id = %s AND candidate_id = %s LIMIT 1",
            (job_id, candidate_id),
        )
        return value is not None

    async def find_active_representation(self, candidate_user_id: str) -> dict[str, Any] | None:
        """
        The recruiter currently representing a candidate user, if any.

        All conditions must hold at once: a consented active relationship that
        has not ended, an unexpired sourcing-protection window, and an active
        recruiter with a user account.
        """
        row = await fetch_one(
            """
            SELECT c.id AS candidate_id,
                   c.full_name AS candidate_name,
                   r.user_id AS recruiter_user_id,
                   u.name AS recruiter_name
            FROM candidates c
            JOIN recruiter_candidates rc
              ON rc.candidate_id = c.id
             AND rc.status = 'active'
             AND rc.consent_given = TRUE
             AND (rc.relationship_end_date IS NULL OR rc.relationship_end_date >= NOW())
            JOIN candidate_sourcers cs
              ON cs.candidate_id = c.id
             AND cs.protection_expires_at IS NOT NULL
             AND cs.protection_expires_at > NOW()
            JOIN recruiters r
              ON r.id = rc.recruiter_id
             AND r.status = 'active'
             AND r.user_id IS NOT NULL
            LEFT JOIN users u ON u.id = r.user_id
            WHERE c.user_id = %s
            LIMIT 1
            """,
            (candidate_user_id,),
        )
        if not row:
            return None
        return {
            "candidate_id": as_str(row["candidate_id"]),
            "candidate_name": row.get("candidate_name"),
            "recruiter_user_id": as_str(row["recruiter_user_id"]),
            "recruiter_name": row.get("recruiter_name"),
        }
