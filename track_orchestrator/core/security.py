from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from track_orchestrator.core.config import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def get_api_key(api_key: str = Security(api_key_header)) -> str:
    """Validate the X-API-Key header when API_ACCESS_TOKEN is configured."""
    if not settings.API_ACCESS_TOKEN:
        return ""
    if api_key == settings.API_ACCESS_TOKEN:
        return api_key
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Could not validate credentials",
    )
