from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PORT: int = 8787
    ENVIRONMENT: str = "development"
    ALLOWED_ORIGINS: str = "*"
    FORCE_HTTPS: bool = False

    # OOTDiffusion Gradio Space
    HF_TOKEN: str = ""
    SPACE_URL: str = "https://levihsu-ootdiffusion.hf.space"
    SPACE_API_PREFIX: str = "/gradio_api"
    REMOTE_TIMEOUT_S: float = 120.0

    # Wall-clock ceiling for one submission, retries included
    REQUEST_TIMEOUT_S: float = 60.0

    MAX_UPLOAD_MB: int = 10
    MAX_IMAGE_SIDE: int = 1536

    # Usage throttle
    DAILY_TRIES: int = 1
    USAGE_WINDOW_HOURS: int = 24
    USAGE_STORE_PATH: str = ""  # empty keeps usage in memory

    RATE_LIMIT: str = "20/minute"
    RATE_LIMIT_ENABLED: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def origins(self) -> list[str]:
        origins = [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]
        return origins or ["*"]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"
