import tomllib
from functools import cached_property
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, computed_field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from portcullis.core.auth.types_auth import GrantType
from portcullis.types.exceptions import (
    DotenvInvalidVariableError,
    DotenvMissingVariableError,
)


class AuthClientConfig(BaseModel):
    """
    Configuration for a client that should exist as soon as the server starts.

    Clients declared here are registered at startup if they don't exist yet.
    Other clients are registered at runtime using the `/auth/clients` endpoints.
    """

    name: str
    # If None, the client is a public client and is expected to use PKCE
    secret: str | None = None
    redirect_uri: list[str] = []
    scopes: list[str] = []
    grant_types: list[GrantType] = [GrantType.authorization_code]


class Settings(BaseSettings):
    """
    Settings for Portcullis
    The class is based on a configuration file: `/config.yaml`.

    All undefined variables will be populated from:
    1. An environment variable
    2. A yaml config.yaml file
    3. The dotenv .env file

    See [Pydantic Settings documentation](https://docs.pydantic.dev/latest/concepts/pydantic_settings/#dotenv-env-support) for more information.
    See [FastAPI settings](https://fastapi.tiangolo.com/advanced/settings/) article for best practices with settings.

    To access these settings, the `get_settings` dependency should be used.
    """

    # By default, the settings are loaded from the `config.yaml` or `.env` file but this behaviour can be overridden using
    # `_env_file` and `_yaml_file` parameter during instantiation
    # Ex: `Settings(_env_file=".env.dev", _yaml_file="config.dev.yaml")`
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        case_sensitive=False,
        extra="ignore",
    )

    # Pydantic does not support overriding the yaml file path using the `_yaml_file` parameter
    # as it does for the `_env_file` parameter.
    # See https://github.com/pydantic/pydantic-settings/issues/259
    _yaml_file: ClassVar[str]

    def __init__(self, _yaml_file, _env_file, **kwargs):
        Settings._yaml_file = _yaml_file
        super().__init__(_env_file=_env_file, **kwargs)

    # The order of the returned sources define their precedence:
    # parameters passed an initialization arguments will have
    # precedence over environment variables, yaml file and dotenv
    # See https://docs.pydantic.dev/latest/concepts/pydantic_settings/#important-notes
    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=cls._yaml_file),
            dotenv_settings,
        )

    #################
    # Authorization #
    #################

    # ACCESS_TOKEN_SECRET_KEY should contain a random string with enough entropy (at least 32 bytes long) to securely sign all access tokens
    ACCESS_TOKEN_SECRET_KEY: str

    # Host or url of the instance of Portcullis
    # This url will be used as the issuer in the authorization server metadata
    # NOTE: A trailing / is required
    CLIENT_URL: str

    # Clients registered at startup, the following format should be used in yaml config files:
    # ```yml
    # AUTH_CLIENTS:
    #   <ClientId>:
    #     name: <DisplayName>
    #     secret: <ClientSecret>
    #     redirect_uri:
    #       - <RedirectUri1>
    #     scopes:
    #       - read:profile
    #     grant_types:
    #       - authorization_code
    #       - refresh_token
    # ```
    # `secret` may be omitted to register a public client using PKCE
    AUTH_CLIENTS: dict[str, AuthClientConfig] = {}

    # bcrypt cost used to hash client secrets and user passwords. 13 allows for a 0.5 seconds computing delay.
    SECRET_HASH_ROUNDS: int = 13

    #######################
    # Portcullis settings #
    #######################

    # By default, only production's records are logged
    LOG_DEBUG_MESSAGES: bool = False

    # Origins for the CORS middleware. `["http://localhost"]` can be used for development.
    # See https://fastapi.tiangolo.com/tutorial/cors/
    # It should begin with 'http://' or 'https:// and should never end with a '/'
    CORS_ORIGINS: list[str] = []

    ############################
    # PostgreSQL configuration #
    ############################
    # If set, the application use a SQLite database instead of PostgreSQL, for testing or development purposes (if possible Postgresql should be used instead)
    SQLITE_DB: str | None = None
    POSTGRES_HOST: str = ""
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    DATABASE_DEBUG: bool = False  # If True, the database will log all queries

    # Every storage call is bounded by this timeout, a slower call fails with a server error
    STORAGE_TIMEOUT_SECONDS: float = 5.0

    ########################
    # Redis configuration #
    ########################
    # Redis is needed to run the expired tokens sweeper worker, or multiple uvicorn workers
    REDIS_HOST: str | None = None
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str | None = None

    # Minute of each hour at which the sweeper deletes expired codes and tokens
    SWEEPER_MINUTE: int = 17

    ###################
    # Tokens validity #
    ###################

    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30  # 30 days
    AUTHORIZATION_CODE_EXPIRE_MINUTES: int = 10

    ######################
    # Portcullis version #
    ######################

    @computed_field  # type: ignore[prop-decorator]
    @cached_property
    def PORTCULLIS_VERSION(cls) -> str:
        with Path("pyproject.toml").open("rb") as pyproject_binary:
            pyproject = tomllib.load(pyproject_binary)
        return str(pyproject["project"]["version"])

    ######################################
    # Automatically generated parameters #
    ######################################

    @computed_field  # type: ignore[prop-decorator]
    @cached_property
    def ISSUER(cls) -> str:
        # We want to remove the trailing slash
        return cls.CLIENT_URL[:-1]

    @computed_field  # type: ignore[prop-decorator]
    @cached_property
    def REDIS_URL(cls) -> str | None:
        if cls.REDIS_HOST:
            # We need to include `:` before the password
            return (
                f"redis://:{cls.REDIS_PASSWORD or ''}@{cls.REDIS_HOST}:{cls.REDIS_PORT}"
            )
        return None

    #######################################
    #          Fields validation          #
    #######################################

    @model_validator(mode="after")
    def check_client_urls(self) -> "Settings":
        if not self.CLIENT_URL[-1] == "/":
            raise DotenvInvalidVariableError(
                "CLIENT_URL must contains a trailing slash",
            )

        return self

    @model_validator(mode="after")
    def check_database_settings(self) -> "Settings":
        """
        All fields are optional, but the dotenv should configure SQLITE_DB or a Postgres database
        """
        if not (
            self.SQLITE_DB
            or (
                self.POSTGRES_HOST
                and self.POSTGRES_USER
                and self.POSTGRES_PASSWORD
                and self.POSTGRES_DB
            )
        ):
            raise DotenvMissingVariableError(
                "Either SQLITE_DB or POSTGRES_HOST, POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB",
            )

        return self

    @model_validator(mode="after")
    def check_secrets(self) -> "Settings":
        if not self.ACCESS_TOKEN_SECRET_KEY:
            raise DotenvMissingVariableError(
                "ACCESS_TOKEN_SECRET_KEY",
            )

        return self

    @model_validator(mode="after")
    def check_tokens_validity(self) -> "Settings":
        if (
            self.ACCESS_TOKEN_EXPIRE_MINUTES <= 0
            or self.REFRESH_TOKEN_EXPIRE_MINUTES <= 0
            or self.AUTHORIZATION_CODE_EXPIRE_MINUTES <= 0
        ):
            raise DotenvInvalidVariableError(
                "Tokens and authorization codes validity should be strictly positive",
            )
        if self.STORAGE_TIMEOUT_SECONDS <= 0:
            raise DotenvInvalidVariableError(
                "STORAGE_TIMEOUT_SECONDS should be strictly positive",
            )

        return self

    @model_validator(mode="after")
    def init_cached_property(self) -> "Settings":
        """
        Cached property are not computed during the instantiation of the class, but when they are accessed for the first time.
        By calling them in this validator, we force their initialization during the instantiation of the class.
        """
        self.PORTCULLIS_VERSION  # noqa: B018
        self.ISSUER  # noqa: B018
        self.REDIS_URL  # noqa: B018

        return self


def construct_prod_settings() -> Settings:
    """
    Return the production settings
    """
    return Settings(_env_file=".env", _yaml_file="config.yaml")
