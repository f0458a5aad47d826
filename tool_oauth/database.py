"""
SQLAlchemy tables and engine for the SQL credential store. SQLite by default.
Timestamps are epoch milliseconds so expiry uses the same clock as the in-memory store.
"""
import json

from sqlalchemy import BigInteger, Boolean, Engine, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from tool_oauth.models import AccessToken, AuthorizationCode, Client, RefreshToken


class Base(DeclarativeBase):
    pass


class ClientRow(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    # JSON array of allowed redirect URIs; exact match required
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False)
    allowed_scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @classmethod
    def from_model(cls, client: Client) -> "ClientRow":
        return cls(
            client_id=client.client_id,
            client_secret_hash=client.client_secret_hash,
            redirect_uris=json.dumps(sorted(client.redirect_uris)),
            allowed_scopes=" ".join(client.allowed_scopes),
            name=client.name,
        )

    def to_model(self) -> Client:
        return Client(
            client_id=self.client_id,
            client_secret_hash=self.client_secret_hash,
            redirect_uris=frozenset(json.loads(self.redirect_uris)),
            allowed_scopes=self.allowed_scopes,
            name=self.name,
        )


class AccessTokenRow(Base):
    __tablename__ = "access_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    refresh_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    def to_model(self) -> AccessToken:
        return AccessToken(
            token=self.token,
            client_id=self.client_id,
            scopes=self.scope,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
        )


class RefreshTokenRow(Base):
    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    def to_model(self) -> RefreshToken:
        return RefreshToken(
            token=self.token,
            access_token=self.access_token,
            client_id=self.client_id,
            scopes=self.scope,
            expires_at=self.expires_at,
        )


class AuthorizationCodeRow(Base):
    __tablename__ = "authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    code_challenge: Mapped[str] = mapped_column(String(255), nullable=False)
    code_challenge_method: Mapped[str] = mapped_column(String(16), nullable=False, default="S256")
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    def to_model(self) -> AuthorizationCode:
        return AuthorizationCode(
            code=self.code,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            code_challenge=self.code_challenge,
            code_challenge_method=self.code_challenge_method,
            scopes=self.scope,
            used=self.used,
            expires_at=self.expires_at,
        )


def create_engine_for(database_url: str) -> Engine:
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    # File-based SQLite needs check_same_thread=False for FastAPI's thread pool
    if database_url.startswith("sqlite:///:memory:") or database_url == "sqlite://":
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=engine)
