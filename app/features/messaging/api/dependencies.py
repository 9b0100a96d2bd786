"""
FastAPI dependencies for the messaging routes.
"""

from fastapi import Depends, HTTPException, Request, status

from app.auth.verify import current_user_id
from app.features.messaging.container import MessagingServices
from app.features.messaging.domain.models import AccessContext


def get_messaging(request: Request) -> MessagingServices:
    services = getattr(request.app.state, "messaging", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Messaging not ready"
        )
    return services


async def get_access_context(
    user_id: str = Depends(current_user_id),
    services: MessagingServices = Depends(get_messaging),
) -> AccessContext:
    return await services.access_resolver.load_access_context(user_id)
