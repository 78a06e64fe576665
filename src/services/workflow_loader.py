"""Parser for JSON workflow documents."""

import json
from pathlib import Path

from pydantic import ValidationError

from models.task import WorkflowSpec


class WorkflowParseError(Exception):
    """Raised when a workflow document cannot be parsed."""

    pass


class WorkflowLoader:
    """Parses workflow JSON into a WorkflowSpec."""

    def parse_file(self, path: str) -> WorkflowSpec:
        """Parse a workflow from a JSON file."""
        if not path:
            raise ValueError("path is required")

        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Workflow file not found: {path}")

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}")

        return self.parse_json(data)

    def parse_json(self, data: dict) -> WorkflowSpec:
        """Parse a workflow from a JSON dict."""
        if data is None:
            raise ValueError("data is required")
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow document must be a JSON object")

        try:
            return WorkflowSpec.model_validate(data)
        except ValidationError as e:
            raise WorkflowParseError(f"Invalid workflow structure: {e}")
