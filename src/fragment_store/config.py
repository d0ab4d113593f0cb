"""Configuration management for the vector stores using Hydra.

Configuration is loaded from YAML files in conf/vector_store/.
This module provides typed config objects and validation.
"""

from pathlib import Path

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSION = 1536


class JSONBackendConfig(BaseModel):
    """In-memory/file-backed store configuration.

    Attributes:
        index_path: File the whole collection is written to on save
    """

    index_path: str = "data/vector-store-index.json"


class SQLiteBackendConfig(BaseModel):
    """Embedded relational store configuration.

    Attributes:
        db_path: Single database file holding both tables
        enable_wal: Request write-ahead journaling on the working connection
        cache_size: Page cache size in KB
    """

    db_path: str = "data/vector-store.db"
    enable_wal: bool = True
    cache_size: int = Field(default=10000, ge=0)


class PgVectorBackendConfig(BaseModel):
    """PostgreSQL + pgvector store configuration.

    Attributes:
        host: Database host
        port: Database port
        database: Database name
        user: Role to connect as
        password: Role password (set via env var)
        ssl: Whether to require TLS
        pool_size: Maximum pooled connections
        connection_timeout: Seconds to wait when opening a connection
    """

    host: str
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    user: str
    password: str | None = None
    ssl: bool = True
    pool_size: int = Field(default=10, ge=1, le=100)
    connection_timeout: float = Field(default=5.0, gt=0.0, le=300.0)


class StoreConfig(BaseModel):
    """Top-level store configuration.

    Attributes:
        backend: Which backend to construct ("json", "sqlite" or "pgvector")
        embedding_model: Embedding model the stored vectors come from
        dimension: Embedding dimensionality the store must conform to
        json_store: Settings for the "json" backend
        sqlite: Settings for the "sqlite" backend
        pgvector: Settings for the "pgvector" backend
    """

    backend: str = Field(pattern="^(json|sqlite|pgvector)$")
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    dimension: int = Field(default=DEFAULT_DIMENSION, ge=1, le=16000)
    json_store: JSONBackendConfig | None = None
    sqlite: SQLiteBackendConfig | None = None
    pgvector: PgVectorBackendConfig | None = None


def default_config_dir() -> Path:
    """Return conf/vector_store/ relative to the repository root."""
    repo_root = Path(__file__).parent.parent.parent
    return repo_root / "conf" / "vector_store"


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> StoreConfig:
    """Load store configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/vector_store/)
        overrides: List of config overrides (e.g., ["dimension=768"])

    Returns:
        Validated configuration object

    Example:
        >>> config = load_config("default")
        >>> config.backend
        'json'

        >>> config = load_config("sqlite", overrides=["sqlite.cache_size=2000"])
        >>> config.sqlite.cache_size
        2000
    """
    if config_path is None:
        config_path = default_config_dir()

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(
        config_dir=str(config_path), version_base=None, job_name="vector_store"
    ):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    # Convert OmegaConf to dict and validate with Pydantic
    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return StoreConfig(**config_dict)  # type: ignore


def create_default_config() -> dict[str, object]:
    """Create a default configuration dictionary for bootstrapping.

    Returns:
        Dictionary suitable for writing to YAML

    Example:
        >>> import yaml
        >>> config = create_default_config()
        >>> with open("conf/vector_store/default.yaml", "w") as f:
        ...     yaml.dump(config, f)
    """
    return {
        "backend": "json",
        "embedding_model": DEFAULT_EMBEDDING_MODEL,
        "dimension": DEFAULT_DIMENSION,
        "json_store": {"index_path": "data/vector-store-index.json"},
        "sqlite": {"db_path": "data/vector-store.db", "enable_wal": True, "cache_size": 10000},
        "pgvector": None,
    }
