from fastapi import HTTPException, Header

import config

def verify_admin(x_api_key: str = Header(default="")):
    if x_api_key != config.ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin API key")

def get_store_id(x_store_id: int | None = Header(default=None)) -> int:
    """Tenant for admin requests; every admin query is scoped to it."""
    return x_store_id if x_store_id is not None else config.DEFAULT_STORE_ID
