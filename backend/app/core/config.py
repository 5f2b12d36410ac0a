from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


VINDI_API_URLS = {
    "sandbox": "https://sandbox-app.vindi.com.br/api/v1",
    "production": "https://app.vindi.com.br/api/v1",
}


class Settings(BaseSettings):
    """
    Configurações globais do orquestrador de adesões MedPass.
    Lê automaticamente variáveis do arquivo .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Projeto
    project_name: str = "MedPass Adesões API"
    api_v1_str: str = "/api/v1"
    debug: bool = False
    log_dir: str = "log"

    # Banco de dados
    database_url: str = "sqlite:///./dev.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:8000",
    ]

    # Ações de operador (painel administrativo)
    admin_api_token: Optional[str] = None

    # Autentique (assinatura eletrônica)
    autentique_api_key: Optional[str] = None
    autentique_api_url: str = "https://api.autentique.com.br/v2/graphql"
    autentique_webhook_secret: Optional[str] = None

    # Vindi (assinaturas / cobranças)
    vindi_api_key: Optional[str] = None
    vindi_environment: str = "production"
    vindi_api_url: Optional[str] = None
    vindi_webhook_token: Optional[str] = None
    default_payment_method: str = "pix"

    # Chamadas externas
    gateway_timeout_seconds: float = 15.0
    gateway_max_retries: int = 3
    gateway_backoff_seconds: float = 0.5

    # PIX: QR code é gerado de forma assíncrona pela Vindi
    pix_artifact_attempts: int = 3
    pix_artifact_delay_seconds: float = 3.0

    # Reconciliação periódica
    reconcile_enabled: bool = False
    reconcile_interval_seconds: int = 600
    reconcile_budget_seconds: float = 120.0
    reconcile_charge_timeout_seconds: float = 10.0

    # Contrato (dados da contratada)
    contract_company_name: str = "MEDPASS – MULTI BENEFÍCIOS - LTDA"
    contract_company_cnpj: str = "54.638.988/0001-48"
    contract_company_city: str = "Umuarama/PR"
    contract_loyalty_months: int = 12
    contract_termination_fee_percent: int = 50

    def resolved_vindi_api_url(self) -> str:
        """URL base da API Vindi, respeitando override explícito e ambiente."""
        if self.vindi_api_url:
            return self.vindi_api_url.rstrip("/")
        environment = (self.vindi_environment or "production").strip().lower()
        return VINDI_API_URLS.get(environment, VINDI_API_URLS["production"])


@lru_cache
def get_settings() -> Settings:
    """Retorna a instância de configurações globais (cacheada)."""
    return Settings()


settings = get_settings()
