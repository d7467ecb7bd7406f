from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Meta Graph API ─────────────────────────────────────────
    graph_api_version: str = "v23.0"
    # Operator (user) token used for Instagram calls and account listing.
    meta_user_access_token: str = ""
    http_timeout: float = 60.0

    # ── Media host (Cloudinary) ────────────────────────────────
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    cloudinary_upload_preset: str = ""
    cloudinary_folder: str = ""

    # ── Scheduled Instagram records ────────────────────────────
    schedule_backend: str = "mongo"  # mongo | sqlite
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "pagepost"
    schedule_db_path: Path = Path("output/schedule.db")

    # ── Submission rules ───────────────────────────────────────
    max_images: int = 10
    min_schedule_lead_minutes: int = 20
    max_schedule_horizon_days: int = 29  # 0 disables the upper bound

    # ── App ────────────────────────────────────────────────────
    cors_origins: list[str] = ["http://localhost:5173"]
    log_level: str = "INFO"

    @property
    def graph_base_url(self) -> str:
        return f"https://graph.facebook.com/{self.graph_api_version}"


settings = Settings()
