import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, configure_logging
from .database import PoolTimeout
from .errors import (
    AuthRateLimitExceeded,
    BrowseRateLimitExceeded,
    InsufficientPermissions,
    LendingError,
    MissingToken,
    StaleSession,
    UserNotFound,
)
from .models import User
from .ratelimit import RequestLimiter
from .services import Services, build_services
from .validators import MAX_PAGE, SQLITE_MAX_INT

logger = logging.getLogger(__name__)

RowId = Annotated[int, Path(ge=1, le=SQLITE_MAX_INT)]
OptionalRowId = Annotated[Optional[int], Query(ge=1, le=SQLITE_MAX_INT)]
Page = Annotated[int, Query(ge=1, le=MAX_PAGE)]
PageSize = Annotated[Optional[int], Query(ge=1, le=SQLITE_MAX_INT)]
Year = Annotated[Optional[int], Query(ge=0, le=9999)]
BodyId = Annotated[int, Field(ge=1, le=SQLITE_MAX_INT)]
MAX_COPIES = 100_000


# --- Request models ---

class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, description="End only this session")


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)


class BookCreateRequest(BaseModel):
    isbn: str
    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=255)
    publisher: Optional[str] = Field(default=None, max_length=255)
    publication_year: Optional[int] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = Field(default=None, max_length=500)
    total_copies: int = Field(default=1, ge=1, le=MAX_COPIES)
    available_copies: Optional[int] = Field(default=None, ge=0, le=MAX_COPIES)
    category_ids: List[BodyId] = Field(default_factory=list)


class BookUpdateRequest(BaseModel):
    # available_copies is not accepted here; it moves only with checkouts and returns
    model_config = ConfigDict(extra="forbid")

    isbn: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    author: Optional[str] = Field(default=None, min_length=1, max_length=255)
    publisher: Optional[str] = Field(default=None, max_length=255)
    publication_year: Optional[int] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = Field(default=None, max_length=500)
    total_copies: Optional[int] = Field(default=None, ge=1, le=MAX_COPIES)
    category_ids: Optional[List[BodyId]] = None


class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class BorrowRequest(BaseModel):
    book_id: BodyId
    loan_period_days: Optional[int] = Field(default=None, ge=1, le=60)
    notes: Optional[str] = Field(default=None, max_length=500)


class ReturnRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class RenewRequest(BaseModel):
    extension_days: Optional[int] = Field(default=None, ge=1, le=30)
    notes: Optional[str] = Field(default=None, max_length=500)


# --- Dependencies ---

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    services: Services = Depends(get_services),
) -> User:
    """Resolve the bearer access token to a user row."""
    if credentials is None or not credentials.credentials:
        raise MissingToken()
    claims = services.tokens.verify(credentials.credentials)
    try:
        return services.auth.get_user(claims.user_id)
    except UserNotFound:
        raise StaleSession() from None


def require_librarian(user: User = Depends(get_current_user)) -> User:
    if not user.is_librarian:
        raise InsufficientPermissions()
    return user


def rate_limited(scope: str, error: Type[LendingError]) -> Callable[[Request], None]:
    """Dependency spending one unit of the client address's ``scope`` budget per request."""
    def check(request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        if not request.app.state.rate_limiter.hit(scope, client):
            raise error()
    return check


auth_limit = Depends(rate_limited("auth", AuthRateLimitExceeded))
browse_limit = Depends(rate_limited("browse", BrowseRateLimitExceeded))


def _pagination(result: Dict[str, Any]) -> Dict[str, int]:
    return {
        "page": result["page"],
        "pages": result["pages"],
        "total": result["total"],
        "limit": result["limit"],
    }


def _self_or_librarian(user: User, user_id: int) -> int:
    if user_id == user.id:
        return user.id
    if not user.is_librarian:
        raise InsufficientPermissions()
    return user_id


# --- Auth ---

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", status_code=201, dependencies=[auth_limit])
def register(payload: RegisterRequest, services: Services = Depends(get_services)):
    user, tokens = services.auth.register(payload.email, payload.password,
                                          payload.first_name, payload.last_name)
    return {"message": "User registered successfully", "user": user.to_dict(), "tokens": tokens.to_dict()}


@auth_router.post("/login")
def login(payload: LoginRequest, services: Services = Depends(get_services)):
    user, tokens = services.auth.login(payload.email, payload.password, payload.remember_me)
    return {"message": "Login successful", "user": user.to_dict(), "tokens": tokens.to_dict()}


@auth_router.post("/logout")
def logout(payload: Optional[LogoutRequest] = None, user: User = Depends(get_current_user),
           services: Services = Depends(get_services)):
    services.auth.logout(user.id, payload.refresh_token if payload else None)
    return {"message": "Logout successful"}


@auth_router.post("/refresh", dependencies=[auth_limit])
def refresh(payload: RefreshRequest, services: Services = Depends(get_services)):
    tokens = services.auth.refresh(payload.refresh_token)
    return {"message": "Token refreshed successfully", "tokens": tokens.to_dict()}


@auth_router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"user": user.to_dict()}


@auth_router.post("/forgot-password", dependencies=[auth_limit])
def forgot_password(payload: ForgotPasswordRequest, services: Services = Depends(get_services)):
    token = services.auth.forgot_password(payload.email)
    body: Dict[str, Any] = {"message": "If the email exists, a password reset link has been sent"}
    # No mail transport: the token is handed back only when debugging
    if token and services.settings.debug:
        body["reset_token"] = token
    return body


@auth_router.post("/reset-password", dependencies=[auth_limit])
def reset_password(payload: ResetPasswordRequest, services: Services = Depends(get_services)):
    services.auth.reset_password(payload.token, payload.password)
    return {"message": "Password reset successfully"}


@auth_router.post("/change-password")
def change_password(payload: ChangePasswordRequest, user: User = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    services.auth.change_password(user.id, payload.current_password, payload.new_password)
    return {"message": "Password changed successfully. Please log in again."}


# --- Books ---

books_router = APIRouter(prefix="/api/books", tags=["books"])


@books_router.get("", dependencies=[browse_limit])
def list_books(
    search: Optional[str] = None,
    author: Optional[str] = None,
    publisher: Optional[str] = None,
    category: Optional[str] = None,
    year_from: Year = None,
    year_to: Year = None,
    available_only: bool = False,
    page: Page = 1,
    limit: PageSize = None,
    sort_by: str = "title",
    sort_order: str = "asc",
    services: Services = Depends(get_services),
):
    result = services.books.search_books(
        search=search, author=author, publisher=publisher, category=category,
        year_from=year_from, year_to=year_to, available_only=available_only,
        page=page, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )
    return {"books": [b.to_dict() for b in result["books"]], "pagination": _pagination(result)}


@books_router.get("/popular", dependencies=[browse_limit])
def popular_books(limit: int = 10, period_days: int = 30, services: Services = Depends(get_services)):
    return {"books": services.books.popular_books(limit=limit, period_days=period_days)}


@books_router.get("/recent", dependencies=[browse_limit])
def recent_books(limit: int = 10, available_only: bool = False, services: Services = Depends(get_services)):
    books = services.books.recent_books(limit=limit, available_only=available_only)
    return {"books": [b.to_dict() for b in books]}


@books_router.get("/statistics")
def book_statistics(_: User = Depends(require_librarian), services: Services = Depends(get_services)):
    return {"statistics": services.books.statistics()}


@books_router.get("/category/{category_id}", dependencies=[browse_limit])
def books_by_category(category_id: RowId, page: Page = 1, limit: PageSize = None,
                      available_only: bool = False, services: Services = Depends(get_services)):
    result = services.books.books_by_category(category_id, page=page, limit=limit,
                                              available_only=available_only)
    return {"books": [b.to_dict() for b in result["books"]], "pagination": _pagination(result)}


@books_router.get("/{book_id}", dependencies=[browse_limit])
def get_book(book_id: RowId, services: Services = Depends(get_services)):
    return {"book": services.books.get_book(book_id).to_dict()}


@books_router.get("/{book_id}/availability", dependencies=[browse_limit])
def book_availability(book_id: RowId, services: Services = Depends(get_services)):
    return services.books.check_availability(book_id)


@books_router.post("", status_code=201)
def create_book(payload: BookCreateRequest, _: User = Depends(require_librarian),
                services: Services = Depends(get_services)):
    data = payload.model_dump(exclude={"category_ids"})
    book = services.books.create_book(data, payload.category_ids)
    return {"message": "Book created successfully", "book": book.to_dict()}


@books_router.put("/{book_id}")
def update_book(book_id: RowId, payload: BookUpdateRequest, _: User = Depends(require_librarian),
                services: Services = Depends(get_services)):
    updates = payload.model_dump(exclude_unset=True, exclude={"category_ids"})
    book = services.books.update_book(book_id, updates, payload.category_ids)
    return {"message": "Book updated successfully", "book": book.to_dict()}


@books_router.delete("/{book_id}")
def delete_book(book_id: RowId, _: User = Depends(require_librarian),
                services: Services = Depends(get_services)):
    services.books.delete_book(book_id)
    return {"message": "Book deleted successfully"}


# --- Categories ---

categories_router = APIRouter(prefix="/api/categories", tags=["categories"])


@categories_router.get("", dependencies=[browse_limit])
def list_categories(page: Page = 1, limit: PageSize = None, search: Optional[str] = None,
                    services: Services = Depends(get_services)):
    result = services.categories.list_categories(page=page, limit=limit, search=search)
    return {"categories": [c.to_dict() for c in result["categories"]], "pagination": _pagination(result)}


@categories_router.get("/popular", dependencies=[browse_limit])
def popular_categories(limit: int = 10, services: Services = Depends(get_services)):
    return {"categories": [c.to_dict() for c in services.categories.popular_categories(limit)]}


@categories_router.get("/options", dependencies=[browse_limit])
def category_options(services: Services = Depends(get_services)):
    return {"options": services.categories.category_options()}


@categories_router.get("/search", dependencies=[browse_limit])
def search_categories(q: str = Query(""), limit: int = 10, services: Services = Depends(get_services)):
    return {"categories": [c.to_dict() for c in services.categories.search_categories(q, limit)]}


@categories_router.get("/statistics")
def category_statistics(_: User = Depends(require_librarian), services: Services = Depends(get_services)):
    return {"statistics": services.categories.statistics()}


@categories_router.get("/{category_id}", dependencies=[browse_limit])
def get_category(category_id: RowId, services: Services = Depends(get_services)):
    return {"category": services.categories.get_category(category_id).to_dict()}


@categories_router.post("", status_code=201)
def create_category(payload: CategoryRequest, _: User = Depends(require_librarian),
                    services: Services = Depends(get_services)):
    category = services.categories.create_category(payload.name, payload.description)
    return {"message": "Category created successfully", "category": category.to_dict()}


@categories_router.put("/{category_id}")
def update_category(category_id: RowId, payload: CategoryUpdateRequest, _: User = Depends(require_librarian),
                    services: Services = Depends(get_services)):
    category = services.categories.update_category(category_id, payload.name, payload.description)
    return {"message": "Category updated successfully", "category": category.to_dict()}


@categories_router.delete("/{category_id}")
def delete_category(category_id: RowId, _: User = Depends(require_librarian),
                    services: Services = Depends(get_services)):
    services.categories.delete_category(category_id)
    return {"message": "Category deleted successfully"}


# --- Loans ---

loans_router = APIRouter(prefix="/api/loans", tags=["loans"])


@loans_router.post("/borrow", status_code=201)
def borrow_book(payload: BorrowRequest, user: User = Depends(get_current_user),
                services: Services = Depends(get_services)):
    loan = services.loans.borrow_book(user, payload.book_id, payload.loan_period_days, payload.notes)
    return {"message": "Book borrowed successfully", "loan": loan.to_dict()}


@loans_router.get("/my-loans")
def my_loans(status: Optional[str] = None, page: Page = 1, limit: PageSize = None,
             user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    result = services.loans.user_loans(user.id, status=status, page=page, limit=limit)
    return {"loans": [loan.to_dict() for loan in result["loans"]], "pagination": _pagination(result)}


@loans_router.get("")
def all_loans(
    status: Optional[str] = None,
    user_id: OptionalRowId = None,
    book_id: OptionalRowId = None,
    overdue_only: bool = False,
    page: Page = 1,
    limit: PageSize = None,
    sort_by: str = "loan_date",
    sort_order: str = "desc",
    _: User = Depends(require_librarian),
    services: Services = Depends(get_services),
):
    result = services.loans.all_loans(
        status=status, user_id=user_id, book_id=book_id, overdue_only=overdue_only,
        page=page, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )
    return {"loans": [loan.to_dict() for loan in result["loans"]], "pagination": _pagination(result)}


@loans_router.get("/overdue")
def overdue_loans(page: Page = 1, limit: PageSize = None, _: User = Depends(require_librarian),
                  services: Services = Depends(get_services)):
    result = services.loans.overdue_loans(page=page, limit=limit)
    return {"loans": [loan.to_dict() for loan in result["loans"]], "pagination": _pagination(result)}


@loans_router.get("/statistics")
def loan_statistics(_: User = Depends(require_librarian), services: Services = Depends(get_services)):
    return {"statistics": services.loans.statistics()}


@loans_router.get("/most-borrowed")
def most_borrowed(limit: int = 10, period_days: int = 30, _: User = Depends(require_librarian),
                  services: Services = Depends(get_services)):
    return {"books": services.loans.most_borrowed_books(limit=limit, period_days=period_days)}


@loans_router.post("/update-overdue")
def update_overdue(_: User = Depends(require_librarian), services: Services = Depends(get_services)):
    count = services.loans.mark_overdue_loans()
    return {"message": f"{count} loans marked as overdue", "count": count}


@loans_router.get("/eligibility")
def my_eligibility(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"eligibility": services.loans.borrowing_eligibility(user.id)}


@loans_router.get("/eligibility/{user_id}")
def borrowing_eligibility(user_id: RowId, user: User = Depends(get_current_user),
                          services: Services = Depends(get_services)):
    return {"eligibility": services.loans.borrowing_eligibility(_self_or_librarian(user, user_id))}


@loans_router.get("/member-summary")
def my_summary(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"summary": services.loans.member_summary(user.id)}


@loans_router.get("/member-summary/{user_id}")
def member_summary(user_id: RowId, user: User = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    return {"summary": services.loans.member_summary(_self_or_librarian(user, user_id))}


@loans_router.get("/{loan_id}")
def get_loan(loan_id: RowId, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"loan": services.loans.get_loan(loan_id, user).to_dict()}


@loans_router.post("/{loan_id}/return")
def return_book(loan_id: RowId, payload: Optional[ReturnRequest] = None, user: User = Depends(get_current_user),
                services: Services = Depends(get_services)):
    loan = services.loans.return_book(loan_id, user, notes=payload.notes if payload else None)
    return {"message": "Book returned successfully", "loan": loan.to_dict()}


@loans_router.post("/{loan_id}/renew")
def renew_loan(loan_id: RowId, payload: Optional[RenewRequest] = None, user: User = Depends(get_current_user),
               services: Services = Depends(get_services)):
    payload = payload or RenewRequest()
    loan = services.loans.renew_loan(loan_id, user, payload.extension_days, payload.notes)
    return {"message": "Loan renewed successfully", "loan": loan.to_dict()}


@loans_router.post("/{loan_id}/force-return")
def force_return(loan_id: RowId, payload: Optional[ReturnRequest] = None,
                 librarian: User = Depends(require_librarian), services: Services = Depends(get_services)):
    loan = services.loans.force_return(loan_id, librarian, notes=payload.notes if payload else None)
    return {"message": "Book force returned successfully", "loan": loan.to_dict()}


# --- Application ---

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API. Database and services are opened in the lifespan and closed on shutdown."""
    settings = (settings or Settings.from_env()).validate()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(settings)
        app.state.services = services
        logger.info(f"{settings.app_name} v{settings.app_version} started ({settings.environment})")
        try:
            yield
        finally:
            services.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limiter = RequestLimiter.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f} ms)")
        return response

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err["loc"] if part not in ("body", "query", "path")),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Validation failed", "code": "VALIDATION_ERROR", "details": details},
        )

    @app.exception_handler(PoolTimeout)
    async def pool_timeout_handler(request: Request, exc: PoolTimeout):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "Database busy, try again", "code": "DATABASE_BUSY"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(status_code=500, content={"error": message, "code": "INTERNAL_ERROR"})

    @app.get("/health")
    def health(request: Request):
        """Database reachability and pool usage, for container health checks."""
        services: Services = request.app.state.services
        db_ok = services.pool.ping()
        body = {
            "status": "healthy" if db_ok else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.app_version,
            "environment": settings.environment,
            "database": {"connected": db_ok, "pool": services.pool.stats()},
        }
        return JSONResponse(status_code=200 if db_ok else 503, content=body)

    for router in (auth_router, books_router, categories_router, loans_router):
        app.include_router(router)
    return app
