"""
Configuration management for the Serving Benchmark Toolkit.

Provides centralized configuration handling with support for:
- Configuration files (YAML/JSON)
- Environment variables
- Command-line overrides
- Validation and defaults
"""

import os
import json
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Any, Union
from urllib.parse import urlparse
import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import Endpoint


logger = logging.getLogger(__name__)


ENGINE_ALIASES = {
    "primary": "primary",
    "secondary": "secondary",
    "both": "both",
    "llama": "primary",
    "llama.cpp": "primary",
    "vllm": "secondary",
}

PROMPT_TYPES = ("simple", "complex")


class BenchmarkConfig(BaseModel):
    """
    Main configuration class for the Serving Benchmark Toolkit.

    Built once at startup and passed explicitly to every component; instances
    are immutable.
    """

    # Engine selection
    engine: str = Field(default="both", description="Engine(s) to benchmark: primary, secondary or both")

    # Endpoint Configuration
    primary_url: str = Field(default="http://127.0.0.1:8000", description="Base URL of the primary backend")
    secondary_url: str = Field(default="http://127.0.0.1:8001", description="Base URL of the secondary backend")
    primary_name: str = Field(default="llama.cpp", min_length=1, description="Display name of the primary backend")
    secondary_name: str = Field(default="vLLM", min_length=1, description="Display name of the secondary backend")
    model_name: str = Field(default="your-model-name", min_length=1, description="Model identifier sent with every request")

    # Test parameters
    token_counts: List[int] = Field(default_factory=lambda: [256], description="max_tokens values to sweep")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    repetitions: int = Field(default=5, ge=1, le=1000, description="Requests per test case")
    timeout: float = Field(default=60.0, gt=0.0, le=3600.0, description="Per-attempt timeout (seconds)")

    # Retry Configuration
    max_retries: int = Field(default=3, ge=1, le=20, description="Maximum attempts per logical request")
    base_delay: float = Field(default=1.0, ge=0.0, le=60.0, description="Backoff step; attempt n waits n * base_delay (seconds)")
    max_delay: float = Field(default=30.0, ge=0.0, le=300.0, description="Maximum backoff delay (seconds)")

    # Prompts
    system_prompt: str = Field(default="You are a helpful assistant.", description="System message for every request")
    simple_prompt: str = Field(default="What is the capital of France?", min_length=1)
    complex_prompt: str = Field(default="Explain how machine learning works in simple terms with examples.", min_length=1)

    # Run behaviour
    output_dir: str = Field(default="./benchmarks", description="Directory receiving one folder per run")
    dry_run: bool = Field(default=False, description="Use synthetic responses instead of the network")
    abort_on_batch_failure: bool = Field(default=False, description="Stop the sweep after the first fully failed batch")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="structured", description="Log format: 'structured' or 'simple'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = ConfigDict(extra="forbid", frozen=True, protected_namespaces=())

    @field_validator('engine', mode='before')
    @classmethod
    def validate_engine(cls, v):
        """Normalize engine selection."""
        key = str(v).strip().lower()
        if key not in ENGINE_ALIASES:
            raise ValueError("Engine must be one of: primary, secondary, both (aliases: llama, vllm)")
        return ENGINE_ALIASES[key]

    @field_validator('primary_url', 'secondary_url')
    @classmethod
    def validate_url(cls, v):
        """Validate endpoint URL format."""
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Endpoint URL must be an http(s) URL with a host: {v!r}")
        return v.rstrip('/')

    @field_validator('token_counts', mode='before')
    @classmethod
    def parse_token_counts(cls, v):
        """Accept comma-separated strings such as '128,256'."""
        if isinstance(v, int):
            return [v]
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(',')]
            if any(not p for p in parts):
                raise ValueError(f"Malformed token list: {v!r}")
            try:
                return [int(p) for p in parts]
            except ValueError:
                raise ValueError(f"Malformed token list: {v!r}")
        return v

    @field_validator('token_counts')
    @classmethod
    def validate_token_counts(cls, v):
        """Ensure token counts are in range, non-empty and unique."""
        if not v:
            raise ValueError("At least one token count is required")
        for count in v:
            if count < 1 or count > 131072:
                raise ValueError(f"Token count out of range (1-131072): {count}")
        # Drop duplicates, keeping first occurrence order
        return list(dict.fromkeys(v))

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format."""
        valid_formats = ['structured', 'simple']
        if v not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v

    @model_validator(mode='after')
    def validate_delays(self):
        """Ensure max_delay is not smaller than base_delay, defaults included."""
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be greater than or equal to base_delay ({self.base_delay})"
            )
        return self

    @property
    def primary_endpoint(self) -> Endpoint:
        return Endpoint("primary", self.primary_name, self.primary_url, self.model_name)

    @property
    def secondary_endpoint(self) -> Endpoint:
        return Endpoint("secondary", self.secondary_name, self.secondary_url, self.model_name)

    @property
    def single_engine(self) -> bool:
        return self.engine != "both"

    def selected_endpoints(self) -> List[Endpoint]:
        """Endpoints under test, primary first."""
        endpoints = []
        if self.engine in ("primary", "both"):
            endpoints.append(self.primary_endpoint)
        if self.engine in ("secondary", "both"):
            endpoints.append(self.secondary_endpoint)
        return endpoints

    def prompts(self) -> Dict[str, str]:
        """Prompt definitions keyed by prompt type, simple first."""
        return {"simple": self.simple_prompt, "complex": self.complex_prompt}


class ConfigManager:
    """
    Manages configuration loading from multiple sources with precedence:
    1. Command-line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Defaults (lowest priority)
    """

    ENV_PREFIX = "SERVING_BENCHMARK_"

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = Path(config_file) if config_file else None
        self._config: Optional[BenchmarkConfig] = None

    def load_config(self, config_overrides: Optional[Dict[str, Any]] = None) -> BenchmarkConfig:
        """
        Load configuration from all sources with proper precedence.

        Args:
            config_overrides: Dictionary of configuration overrides (highest priority)

        Returns:
            BenchmarkConfig instance

        Raises:
            ValueError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        config_data = {}

        if self.config_file:
            config_data.update(self._load_config_file(self.config_file))

        config_data.update(self._load_from_environment())

        if config_overrides:
            config_data.update({k: v for k, v in config_overrides.items() if v is not None})

        try:
            self._config = BenchmarkConfig(**config_data)
        except Exception as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ValueError(f"Invalid configuration: {e}")

        logger.debug(f"Config: {self._config.model_dump()}")
        return self._config

    def _load_config_file(self, config_file: Path) -> Dict[str, Any]:
        """
        Load configuration from a file (JSON or YAML).

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is unsupported or invalid
        """
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file}")

        suffix = config_file.suffix.lower()
        if suffix not in ['.yaml', '.yml', '.json']:
            raise ValueError(f"Unsupported config file format: {config_file.suffix}")

        try:
            with open(config_file, 'r') as f:
                if suffix == '.json':
                    data = json.load(f) or {}
                else:
                    data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid configuration file format: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {config_file}")
        return data

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Variables are named SERVING_BENCHMARK_<FIELD> in uppercase, e.g.
        SERVING_BENCHMARK_TOKEN_COUNTS=128,256. Values are passed through as
        strings and coerced by pydantic.
        """
        env_config = {}
        for field_name in BenchmarkConfig.model_fields:
            value = os.getenv(f"{self.ENV_PREFIX}{field_name.upper()}")
            if value is not None:
                env_config[field_name] = value
        return env_config

    def get_config(self) -> Optional[BenchmarkConfig]:
        return self._config

    def save_config(self, output_path: Union[str, Path], format: str = "yaml"):
        """
        Save current configuration to a file.

        Args:
            output_path: Path to save configuration file
            format: Output format ('yaml' or 'json')

        Raises:
            ValueError: If no configuration is loaded or invalid format
        """
        if not self._config:
            raise ValueError("No configuration loaded to save")
        if format.lower() not in ('yaml', 'json'):
            raise ValueError(f"Unsupported format: {format}")

        output_path = Path(output_path)
        config_dict = self._config.model_dump()

        with open(output_path, 'w') as f:
            if format.lower() == 'yaml':
                yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
            else:
                json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {output_path}")


def find_config_file() -> Optional[Path]:
    """
    Find configuration file in standard locations.

    Searches ./serving-bencher.{yaml,yml,json} and then the same names
    prefixed with a dot in the home directory.
    """
    search_paths = [
        Path("./serving-bencher.yaml"),
        Path("./serving-bencher.yml"),
        Path("./serving-bencher.json"),
        Path("~/.serving-bencher.yaml").expanduser(),
        Path("~/.serving-bencher.yml").expanduser(),
        Path("~/.serving-bencher.json").expanduser(),
    ]

    for path in search_paths:
        if path.exists():
            logger.info(f"Found configuration file: {path}")
            return path

    return None


def load_config_with_auto_discovery(
    config_file: Optional[Union[str, Path]] = None,
    config_overrides: Optional[Dict[str, Any]] = None
) -> BenchmarkConfig:
    """
    Load configuration with automatic file discovery.

    Args:
        config_file: Explicit config file path (overrides auto-discovery)
        config_overrides: Configuration overrides
    """
    config_path = Path(config_file) if config_file else find_config_file()
    return ConfigManager(config_path).load_config(config_overrides)
