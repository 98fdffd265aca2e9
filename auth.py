from abc import ABC, abstractmethod
from typing import NamedTuple, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from credentials import CredentialStore
from database import get_db, User
from errors import IdentityProviderError, Unauthorized
from schemas import UserCreate, UserLogin, UserOut, UserUpdate, Token
from tokens import TokenService

auth_router = APIRouter()
users_router = APIRouter()
# auto_error=False: a missing token must surface as our own 401 body
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


class ExternalIdentity(NamedTuple):
    external_id: str
    email: str


class IdentityProvider(ABC):
    """Exchanges an authorization code from an OAuth callback for an identity."""

    @abstractmethod
    def exchange(self, code: str) -> ExternalIdentity:
        ...


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def get_credential_store(
    request: Request, db: Session = Depends(get_db)
) -> CredentialStore:
    return CredentialStore(db, default_currency=request.app.state.settings.default_currency)


def get_identity_provider(request: Request) -> Optional[IdentityProvider]:
    return request.app.state.identity_provider


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    tokens: TokenService = Depends(get_token_service),
    db: Session = Depends(get_db),
) -> User:
    user_id = tokens.verify(token)
    user = db.get(User, user_id)
    if user is None:
        raise Unauthorized()
    return user


@auth_router.post("/register", response_model=Token)
def register(
    user: UserCreate,
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
):
    new_user = store.register(user.username, user.password)
    return Token(access_token=tokens.issue(new_user.id))


@auth_router.post("/login", response_model=Token)
def login(
    user: UserLogin,
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
):
    db_user = store.verify(user.username, user.password)
    return Token(access_token=tokens.issue(db_user.id))


@auth_router.get("/external/callback", response_model=Token)
def external_callback(
    code: str,
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
    provider: Optional[IdentityProvider] = Depends(get_identity_provider),
):
    if provider is None:
        raise IdentityProviderError("External sign-in is not configured")
    identity = provider.exchange(code)
    db_user = store.upsert_from_external_identity(identity.external_id, identity.email)
    return Token(access_token=tokens.issue(db_user.id))


@users_router.get("/me", response_model=UserOut)
def read_profile(current_user: User = Depends(get_current_user)):
    return current_user


@users_router.put("/me", response_model=UserOut)
def update_profile(
    changes: UserUpdate,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
):
    return store.update_profile(
        current_user.id,
        currency=changes.currency,
        budget=changes.budget,
        password=changes.password,
    )
