from __future__ import annotations

import argparse
import json
from pathlib import Path

from backend.app.main import app


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Write the HTTP API OpenAPI schema to disk.")
    parser.add_argument("--output", type=Path, default=Path("openapi") / "openapi.json")
    args = parser.parse_args(argv)

    schema_path: Path = args.output
    schema_path.parent.mkdir(parents=True, exist_ok=True)
    schema_path.write_text(json.dumps(app.openapi(), indent=2), encoding="utf-8")
    print(f"Wrote OpenAPI schema to {schema_path}")


if __name__ == "__main__":
    main()
