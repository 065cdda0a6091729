"""
Customer account routes: register / login / logout (session cookie).
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.database import get_db
from boxoffice.services.accounts import (
    authenticate,
    clear_user_session,
    register_user,
    set_user_session,
)

router = APIRouter(prefix="/account", tags=["account"])


@router.post("/register")
async def register(
    request: Request,
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(..., min_length=8),
    db: AsyncSession = Depends(get_db),
):
    user = await register_user(db, name, email, password)
    if user is None:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "E-mail já cadastrado."},
        )
    set_user_session(request, user.id)
    return RedirectResponse(url="/orders", status_code=status.HTTP_303_SEE_OTHER)


@router.post("/login")
async def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    db: AsyncSession = Depends(get_db),
):
    user = await authenticate(db, email, password)
    if user is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "E-mail ou senha inválidos."},
        )
    set_user_session(request, user.id)
    return RedirectResponse(url="/orders", status_code=status.HTTP_303_SEE_OTHER)


@router.post("/logout")
async def logout(request: Request) -> RedirectResponse:
    clear_user_session(request)
    return RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)
