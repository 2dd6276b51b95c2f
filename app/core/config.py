from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # arq job queue for background batch jobs (graduation > promotion > transfer > import).
    redis_host: str = Field("localhost", alias="REDIS_HOST")
    redis_port: int = Field(6379, alias="REDIS_PORT")
    redis_db: int = Field(0, alias="REDIS_DB")
    redis_conn_timeout: int = Field(5, alias="REDIS_CONN_TIMEOUT")
    redis_conn_retries: int = Field(5, alias="REDIS_CONN_RETRIES")
    worker_max_jobs: int = Field(1, alias="WORKER_MAX_JOBS")
    job_timeout_seconds: int = Field(3600, alias="JOB_TIMEOUT_SECONDS")
    job_max_tries: int = Field(3, alias="JOB_MAX_TRIES")
    job_expires_days: int = Field(7, alias="JOB_EXPIRES_DAYS")

    import_max_rows: int = Field(500, alias="IMPORT_MAX_ROWS")
    default_terminal_grade_code: str = Field("SSS3", alias="DEFAULT_TERMINAL_GRADE_CODE")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
