"""Pydantic models for configuration validation."""

from pydantic import BaseModel, Field, field_validator


class ZipLimitsConfig(BaseModel):
    """Safety limits for CHARX and Voxta archives."""

    max_entry_size_mb: float = Field(default=50, gt=0, le=1024)
    max_total_size_mb: float = Field(default=200, gt=0, le=4096)
    max_entries: int = Field(default=2000, gt=0, le=100000)

    @field_validator('max_total_size_mb')
    @classmethod
    def validate_total(cls, v: float, info) -> float:
        """Total limit can't be smaller than a single entry."""
        entry = info.data.get('max_entry_size_mb')
        if entry is not None and v < entry:
            raise ValueError('max_total_size_mb must be >= max_entry_size_mb')
        return v


class PngConfig(BaseModel):
    """PNG export options."""

    # v3 cards also get a 'chara' chunk so v2-only readers still find them
    write_v2_compat_chunk: bool = True


class BatchConfig(BaseModel):
    """Batch import settings."""

    parallelism: int = Field(default=4, gt=0, le=64)
    max_files: int = Field(default=100, gt=0, le=10000)


class ApiConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, gt=0, le=65535)
    debug: bool = False
    max_upload_mb: float = Field(default=100, gt=0)

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('host must not be empty')
        return v


class EngineConfig(BaseModel):
    """Root configuration."""

    zip_limits: ZipLimitsConfig = Field(default_factory=ZipLimitsConfig)
    png: PngConfig = Field(default_factory=PngConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
