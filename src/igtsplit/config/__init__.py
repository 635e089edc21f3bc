"""Run configuration: pydantic schema and JSON loader."""
from igtsplit.config.loader import load_config
from igtsplit.config.schema import RunConfig

__all__ = ["load_config", "RunConfig"]
