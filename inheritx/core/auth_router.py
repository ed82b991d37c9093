"""
Authentication API routes.
"""

from fastapi import APIRouter, Depends

from inheritx.core.auth import LoginRequest, TokenClaims, TokenResponse, authenticate_admin, get_current_user

router = APIRouter()


@router.post("/admin/login", response_model=TokenResponse)
async def admin_login(request: LoginRequest):
    """Exchange the admin password for a JWT with the admin role."""
    return authenticate_admin(request.password)


@router.get("/verify")
async def verify_token(user: TokenClaims = Depends(get_current_user)):
    """Echo the caller's validated claims."""
    return {"valid": True, "user": user.sub, "role": user.role, "expires": user.exp}
