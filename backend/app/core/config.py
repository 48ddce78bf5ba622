from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Mercado Seller Analytics API"
    environment: str = "dev"
    debug: bool = True
    log_level: str = "INFO"

    sqlite_path: str = "./seller_analytics.db"

    password_iterations: int = 120_000
    session_ttl_hours: int = 24 * 30

    auth_mode: str = "local"  # local | external
    auth_issuer: str = ""
    auth_audience: str = ""
    auth_jwks_url: str = ""
    # Shared HS256 secret (Supabase-style projects sign session JWTs with it).
    auth_jwt_secret: str = ""
    auth_require_verified_email: bool = True

    ml_client_id: str = ""
    ml_client_secret: str = ""
    # Must be byte-identical between the authorization redirect and the token exchange.
    ml_redirect_uri: str = "http://localhost:5173/ml-callback"
    ml_auth_base_url: str = "https://auth.mercadolivre.com.br"
    ml_api_base_url: str = "https://api.mercadolibre.com"
    ml_site_id: str = "MLB"
    ml_request_timeout_s: float = 15.0
    ml_max_retries: int = 2
    ml_integration_url: str = "http://localhost:5173/integracao"
    ml_oauth_state_ttl_minutes: int = 15

    monitoring_query_tokens: int = 5
    monitoring_search_limit: int = 20
    monitoring_max_competitors: int = 3
    # Placeholder delivery estimate range (days); not sourced from the marketplace.
    monitoring_delivery_days_min: int = 2
    monitoring_delivery_days_max: int = 6
    monitoring_list_default_limit: int = 50
    monitoring_list_max_limit: int = 200

    analysis_query_tokens: int = 3
    analysis_search_limit: int = 10

    openai_api_key: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    llm_timeout_seconds: float = 30.0
    llm_locale: str = "pt-BR"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
