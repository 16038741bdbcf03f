"""
Configuration management for the WeChat MP gateway.

Loads environment variables from .env file and provides typed access to configuration.
Per-account channel credentials live in the channel config file (see infra/config.py).
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(env_path)


def _default_data_dir() -> str:
    return str(Path(os.getenv("HOME", "/tmp")) / ".openclaw" / "data" / "wemp")


class Config:
    """Configuration class for the gateway."""

    # Gateway
    GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", "8000"))
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Storage
    WEMP_DATA_DIR = os.getenv("WEMP_DATA_DIR") or _default_data_dir()

    # Channel configuration file (JSON, "channels.wemp" section)
    WEMP_CONFIG_FILE = os.getenv("WEMP_CONFIG_FILE", "")

    # Agent routing
    WEMP_AGENT_PAIRED = os.getenv("WEMP_AGENT_PAIRED", "main")
    WEMP_AGENT_UNPAIRED = os.getenv("WEMP_AGENT_UNPAIRED", "wemp-cs")
    AGENT_INVOKE_URL = os.getenv("AGENT_INVOKE_URL", "")
    AGENT_TIMEOUT_S = float(os.getenv("AGENT_TIMEOUT_S", "60"))

    # Inbound aggregation (0 disables debounce)
    WEMP_DEBOUNCE_MS = int(os.getenv("WEMP_DEBOUNCE_MS", "0"))

    # Pairing
    WEMP_PAIRING_API_TOKEN = os.getenv("WEMP_PAIRING_API_TOKEN", "")
    WEMP_PAIRING_APPROVAL = os.getenv("WEMP_PAIRING_APPROVAL", "local")  # local | command
    WEMP_ALLOWLIST_FILE = os.getenv("WEMP_ALLOWLIST_FILE", "")

    # AI assistant toggle default for subjects without stored state
    WEMP_AI_DEFAULT_ENABLED = os.getenv("WEMP_AI_DEFAULT_ENABLED", "true").lower() == "true"

    # Outbound fetch limits
    FETCH_TIMEOUT_S = float(os.getenv("FETCH_TIMEOUT_S", "10"))
    MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

    # Warm access tokens at startup
    WEMP_PREWARM_TOKENS = os.getenv("WEMP_PREWARM_TOKENS", "false").lower() == "true"

    @classmethod
    def validate(cls) -> bool:
        """Validate that required configuration is set."""
        problems = []
        if cls.WEMP_PAIRING_APPROVAL not in ("local", "command"):
            problems.append(f"WEMP_PAIRING_APPROVAL must be 'local' or 'command', got {cls.WEMP_PAIRING_APPROVAL!r}")
        if cls.WEMP_DEBOUNCE_MS < 0:
            problems.append("WEMP_DEBOUNCE_MS must be >= 0")
        if cls.WEMP_CONFIG_FILE and not Path(cls.WEMP_CONFIG_FILE).exists():
            problems.append(f"WEMP_CONFIG_FILE not found: {cls.WEMP_CONFIG_FILE}")

        if problems:
            for problem in problems:
                print(f"⚠️  {problem}")
            return False

        return True


if __name__ == "__main__":
    print("Configuration loaded:")
    print(f"  Data dir: {Config.WEMP_DATA_DIR}")
    print(f"  Channel config: {Config.WEMP_CONFIG_FILE or '(env only)'}")
    print(f"  Agents: paired={Config.WEMP_AGENT_PAIRED} unpaired={Config.WEMP_AGENT_UNPAIRED}")
    print(f"  Debounce: {Config.WEMP_DEBOUNCE_MS} ms")
    print(f"  Pairing API token: {'✓ Set' if Config.WEMP_PAIRING_API_TOKEN else '✗ Not set (endpoint disabled)'}")
    print(f"\n  Validation: {'✓ PASSED' if Config.validate() else '✗ FAILED'}")
