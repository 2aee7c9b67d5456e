from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from urllib.parse import quote_plus


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="ledgerapi/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Diamond Ledger API"
    PROJECT_NAME: str = "Diamond Ledger API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # Lambda 배포 시 JSON 한 줄 로그

    # Database
    POSTGRES_HOST: str = ""
    POSTGRES_PORT: int = 5432
    POSTGRES_USERNAME: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DATABASE: str = ""
    POSTGRES_SCHEMA: str = "public"

    # DATABASE_URL이 있으면 POSTGRES_* 조합보다 우선 (테스트에서는 sqlite 사용)
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    STORE_RETRY_ATTEMPTS: int = 3  # 일시적 DB 연결 오류 재시도 횟수
    STORE_RETRY_BACKOFF_SECONDS: float = 0.2
    DB_CREATE_TABLES: bool = False  # 시작 시 테이블 생성 (로컬/SQLite 개발용)

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # URL encode the password to handle special characters
        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+psycopg2://{self.POSTGRES_USERNAME}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DATABASE}"

    # Security
    SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    CRON_SECRET: str = ""  # 주간 리셋 등 스케줄러 호출 보호용
    PAYMENT_WEBHOOK_SECRET: str = ""  # 결제 게이트웨이 이벤트 호출 보호용

    # External AI service
    AI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    AI_CONNECT_TIMEOUT_SECONDS: float = 5.0
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    CREDENTIAL_FAILURE_THRESHOLD: int = 3  # 연속 실패 시 자격증명 비활성화 기준

    # Business Rules - Check-in
    DAILY_CHECK_IN_REWARD: int = 5  # check_in_rewards 설정이 없을 때 기본 일일 보상
    MILESTONE_DAYS: List[int] = [7, 14, 30]
    MILESTONE_DEFAULT_REWARDS: List[int] = [20, 50, 150]

    # Business Rules - Weekly leaderboard
    WEEKLY_REWARD_AMOUNTS: List[int] = [100, 50, 30]  # 1위, 2위, 3위 보상
    WEEKLY_REWARD_SENDER_ID: Optional[str] = None
    WEEKLY_RESET_LOOKBACK_DAYS: int = 3  # 실행일에서 이만큼 뺀 날이 속한 주를 정산

    # Business Rules - Referral
    REFERRAL_BONUS: int = 5  # 추천인과 가입자에게 각각 지급

    # Business Rules - Generation cost
    FLASH_MODEL_NAME: str = "gemini-2.5-flash-image"
    PRO_MODEL_NAME: str = "gemini-3-pro-image-preview"
    REFUND_MAX_ATTEMPTS: int = 3
    STALE_RESERVATION_MINUTES: int = 30

    # Business Rules - Top-up
    TOPUP_CODE_PREFIX: str = "NAP"

    # Timezone (체크인 날짜 및 주간 경계 계산 기준)
    TIMEZONE: str = "Asia/Ho_Chi_Minh"


settings = Settings()
