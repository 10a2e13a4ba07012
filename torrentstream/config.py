# torrentstream/config.py
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv(override=True)

class Settings(BaseSettings):
    APP_NAME: str = "Torrent Stream"

    # env / debug
    ENV: str = Field(default="dev", description="dev|prod")
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    HOST: str = Field(default="0.0.0.0", description="Server host binding")
    PORT: int = Field(default=3001, description="Server port")

    # cors (comma-separated, "*" for any origin)
    ALLOW_ORIGINS: str = ""

    # torrent engine
    DOWNLOAD_DIR: str = Field(default="./downloads", description="Engine storage root")
    METADATA_TIMEOUT: float = Field(default=60.0, description="Seconds to wait for torrent metadata")
    LISTEN_INTERFACES: str = "0.0.0.0:6881"
    ENABLE_DHT: bool = True
    DELETE_FILES_ON_REMOVE: bool = False
    PIECE_POLL_INTERVAL: float = 0.2
    READAHEAD_PIECES: int = 8

    # file listing: non-media files above this size are still offered
    LARGE_FILE_THRESHOLD: int = 50 * 1024 * 1024

    # streaming
    STREAM_CHUNK: int = 256 * 1024

    # media toolchain
    FFMPEG_PATH: str = "ffmpeg"
    FFMPEG_VIDEO_CODEC: str = "copy"
    FFMPEG_AUDIO_BITRATE: str = "160k"
    TRANSCODE_KILL_GRACE: float = Field(default=5.0, description="Max seconds to wait for ffmpeg after SIGKILL")

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def allow_origins(self) -> list[str]:
        return [o.strip() for o in (self.ALLOW_ORIGINS or "").split(",") if o.strip()]

settings = Settings()
