from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    File,
    Header,
    Path,
    Query,
    Response,
    UploadFile,
)

from bookhub.api.schemas import (
    AuthResponse,
    BookCreateRequest,
    Envelope,
    ForgotPasswordPhoneRequest,
    ForgotPasswordRequest,
    LoginRequest,
    PhoneRegisterRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ReviewCreateRequest,
    ReviewUpdateRequest,
    TokenRefreshRequest,
    UserResponse,
    VerificationRequest,
)
from bookhub.config import get_settings
from bookhub.logging import get_logger
from bookhub.service.auth import AuthResult
from bookhub.service.catalog import book_to_dict, review_to_dict
from bookhub.service.errors import ForbiddenError, UnauthenticatedError, ValidationError
from bookhub.service.media import EXTENSION_CONTENT_TYPES
from bookhub.service.runtime import get_runtime
from bookhub.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

USER_ROLES = ("user", "admin")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _request_token(authorization: Optional[str], access_cookie: Optional[str]) -> str:
    token = _bearer_token(authorization) or access_cookie
    if not token:
        raise UnauthenticatedError("Please authenticate")
    return token


def _access_cookie_alias() -> str:
    return get_settings().access_cookie_name


def _refresh_cookie_alias() -> str:
    return get_settings().refresh_cookie_name


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=_access_cookie_alias()),
) -> User:
    runtime = get_runtime()
    token = _request_token(authorization, access_cookie)
    return runtime.auth.authenticate(token, roles=USER_ROLES)


async def get_token_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=_access_cookie_alias()),
) -> User:
    """Resolve the token owner without requiring an active login (used by logout)."""
    runtime = get_runtime()
    token = _request_token(authorization, access_cookie)
    return runtime.auth.authenticate(token, roles=USER_ROLES, require_logged_in=False)


def _user_payload(user: User) -> dict:
    return UserResponse(**get_runtime().users.profile(user)).model_dump()


def _auth_payload(result: AuthResult) -> dict:
    return AuthResponse(
        user=_user_payload(result.user),
        tokens=result.tokens.to_dict(),
        image_url=result.image_url,
    ).model_dump()


# -- auth --------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an email identity, log it in and set auth cookies."""
    runtime = get_runtime()
    result = await runtime.auth.register_with_email(
        email=body.email,
        password=body.password,
        name=body.name,
        phone=body.phone,
        cookies=response,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/register/phone", response_model=Envelope, status_code=201, tags=["auth"])
async def register_phone(body: PhoneRegisterRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.register_with_phone(
        phone=body.phone,
        password=body.password,
        name=body.name,
        email=body.email,
        cookies=response,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Password login by phone or email.

    Raises:
        400: neither selector supplied
        401: unknown identity or wrong password
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        password=body.password, email=body.email, phone=body.phone, cookies=response
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/refresh-tokens", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.refresh_auth(body.refresh_token, cookies=response)
    return Envelope(status="ok", data={"tokens": result.tokens.to_dict()})


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token_cookie(
    response: Response,
    access_cookie: Optional[str] = Cookie(None, alias=_access_cookie_alias()),
    refresh_cookie: Optional[str] = Cookie(None, alias=_refresh_cookie_alias()),
):
    """Cookie variant of refresh; only re-issues when the access token is nearly expired."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_from_cookies(
        access_cookie, refresh_cookie, cookies=response
    )
    return Envelope(
        status="ok",
        data={"refreshed": result.refreshed, "message": result.message},
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(email=body.email)
    return Envelope(status="ok", data={"message": "Reset code sent to email"})


@router.post("/auth/forgot-password/phone", response_model=Envelope, tags=["auth"])
async def forgot_password_phone(body: ForgotPasswordPhoneRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(phone=body.phone)
    return Envelope(status="ok", data={"message": "Reset code sent to phone"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.code, body.password)
    return Envelope(status="ok", data={"message": "Password reset Successfully"})


@router.post("/auth/send-verification-email", status_code=204, tags=["auth"])
async def send_verification_email(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.send_verification_email(user)
    return Response(status_code=204)


@router.post("/auth/verify-email", status_code=204, tags=["auth"])
async def verify_email(token: str = Query(..., min_length=1, max_length=4096)):
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return Response(status_code=204)


@router.get("/auth/oauth/url", response_model=Envelope, tags=["auth"])
async def oauth_url():
    runtime = get_runtime()
    return Envelope(status="ok", data={"url": runtime.oauth.oauth_url()})


@router.get("/auth/oauth/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    response: Response,
    code: str = Query(..., min_length=1, max_length=2048),
):
    """Complete the provider redirect: log in or create the matching account."""
    runtime = get_runtime()
    result = await runtime.oauth.oauth_login(code, cookies=response)
    if result.created:
        response.status_code = 201
    return Envelope(status="ok", data=_auth_payload(result))


# -- users -------------------------------------------------------------------


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(response: Response, user: User = Depends(get_token_user)):
    runtime = get_runtime()
    result = await runtime.auth.logout(user.id, cookies=response)
    return Envelope(
        status="ok",
        data={"message": result.message, "already_logged_out": result.already_logged_out},
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/users/verification", response_model=Envelope, tags=["users"])
async def verify_identity(body: VerificationRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    runtime.users.verify_identity(
        user,
        country=body.country,
        nationality=body.nationality,
        date_of_birth=body.date_of_birth,
        document_name=body.document_name,
        document_number=body.document_number,
    )
    return Envelope(status="ok", data={"message": "User verified successfully"})


@router.get("/users/dashboard", response_model=Envelope, tags=["users"])
async def dashboard(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.users.dashboard(user))


@router.post("/users/avatar", response_model=Envelope, status_code=201, tags=["users"])
async def upload_avatar(
    file: UploadFile = File(...), user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    limit = runtime.settings.max_avatar_bytes
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise ValidationError("Image too large", detail={"max_bytes": limit})
    url = await runtime.users.upload_avatar(user, data, file.content_type)
    return Envelope(status="ok", data={"image_url": url})


@router.get("/users/avatar", response_model=Envelope, tags=["users"])
async def get_avatar(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"image_url": runtime.users.avatar_url(user)})


@router.delete("/users/avatar", status_code=204, tags=["users"])
async def delete_avatar(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.users.delete_avatar(user)
    return Response(status_code=204)


@router.get("/media/{key:path}", tags=["media"])
async def get_media(
    key: str = Path(..., max_length=512),
    expires: str = Query(..., max_length=20),
    sig: str = Query(..., max_length=128),
):
    """Serve an object addressed by a signed URL."""
    runtime = get_runtime()
    valid, error = runtime.object_storage.validate(key, expires, sig)
    if not valid:
        logger.warning("media_signature_rejected", reason=error)
        raise ForbiddenError("Invalid or expired media link", detail={"reason": error})
    data = await asyncio.to_thread(runtime.object_storage.get, key)
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    media_type = EXTENSION_CONTENT_TYPES.get(ext, "application/octet-stream")
    return Response(
        content=data,
        media_type=media_type,
        headers={"Cache-Control": "private, max-age=300"},
    )


# -- books and reviews -------------------------------------------------------


@router.post("/books", response_model=Envelope, status_code=201, tags=["books"])
async def create_book(body: BookCreateRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    book = runtime.catalog.create_book(
        title=body.title,
        author=body.author,
        genre=body.genre,
        description=body.description,
        published_year=body.published_year,
        created_by=user.id,
    )
    return Envelope(status="ok", data=book_to_dict(book))


@router.get("/books", response_model=Envelope, tags=["books"])
async def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    author: Optional[str] = Query(None, max_length=256),
    genre: Optional[str] = Query(None, max_length=64),
):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=runtime.catalog.list_books(page=page, limit=limit, author=author, genre=genre),
    )


@router.get("/books/search", response_model=Envelope, tags=["books"])
async def search_books(q: str = Query(..., max_length=256)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"books": runtime.catalog.search_books(q)})


@router.get("/books/{book_id}", response_model=Envelope, tags=["books"])
async def get_book(
    book_id: str = Path(..., max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(5, ge=1, le=100),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.catalog.get_book(book_id, page=page, limit=limit))


@router.post("/books/{book_id}/reviews", response_model=Envelope, status_code=201, tags=["reviews"])
async def add_review(
    body: ReviewCreateRequest,
    book_id: str = Path(..., max_length=64),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    review = runtime.catalog.add_review(book_id, user.id, rating=body.rating, comment=body.comment)
    return Envelope(status="ok", data=review_to_dict(review))


@router.put("/reviews/{review_id}", response_model=Envelope, tags=["reviews"])
async def update_review(
    body: ReviewUpdateRequest,
    review_id: str = Path(..., max_length=64),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    review = runtime.catalog.update_review(
        review_id, user.id, rating=body.rating, comment=body.comment
    )
    return Envelope(status="ok", data=review_to_dict(review))


@router.delete("/reviews/{review_id}", status_code=204, tags=["reviews"])
async def delete_review(
    review_id: str = Path(..., max_length=64),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    runtime.catalog.delete_review(review_id, user.id)
    return Response(status_code=204)
