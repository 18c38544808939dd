import json
from pathlib import Path


def read_jsonl_file(file_path: str | Path) -> list[dict]:
    """Read the batch requests of a JSONL file, skipping blank lines

    Args:
        file_path (str | Path): The path to the file to read

    Raises:
        ValueError: If a line is not valid JSON or does not hold a JSON object
    """
    items: list[dict] = []
    for line_number, line in enumerate(Path(file_path).read_text().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as error:
            raise ValueError(f"line {line_number} is not valid JSON: {error.msg}") from error
        if not isinstance(item, dict):
            raise ValueError(f"line {line_number} must hold a JSON object")
        items.append(item)
    return items
