from pathlib import Path

from pydantic import ValidationError

from igtsplit.config.schema import RunConfig
from igtsplit.errors import ConfigurationError


def load_config(path: Path) -> RunConfig:
    """Load and validate a run configuration JSON file. Raises ConfigurationError on failure."""
    try:
        return RunConfig.model_validate_json(
            path.read_text(encoding="utf-8")
        )
    except ValidationError as e:
        field_errors = "; ".join(
            f"{' -> '.join(str(x) for x in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(path, f"Schema validation failed: {field_errors}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(path, str(e)) from e
