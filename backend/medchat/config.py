from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "medchat"
    postgres_user: str = "medchat"
    db_password: str = "changeme"

    # OpenAI
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    completion_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    llm_timeout_seconds: float = 60.0

    # Forwarding webhook
    forward_webhook_url: str = ""
    forward_webhook_secret: str = ""
    forward_timeout_seconds: float = 30.0

    # App
    log_level: str = "INFO"

    # RAG
    rag_top_k: int = 3
    rag_similarity_threshold: float = 0.0

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.db_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
