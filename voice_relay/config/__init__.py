"""
Configuration module for the voice relay.

Key components:
- constants: protocol event names, the fixed telephony audio format, provider
  defaults and agent prompts.
- logging_config: console and rotating-file logging for the ``voice_relay`` logger.
- settings: environment-backed ``RelaySettings`` with credential validation.

Usage examples:
```python
from voice_relay.config.settings import RelaySettings
from voice_relay.config.logging_config import configure_logging

settings = RelaySettings.from_env()
logger = configure_logging(settings.log_level)
settings.require_credentials()  # raises ConfigurationError when keys are missing
```
"""
