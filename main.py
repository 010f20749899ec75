"""Roundtable — dev launcher. Starts the API server in watch mode."""

import argparse
import asyncio
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="Roundtable dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Clean and create the demo scene")
    parser.add_argument("--no-reload", action="store_true",
                        help="Disable auto-reload")
    parser.add_argument("--echo", action="store_true",
                        help="Answer every agent with its own prompt (no LLM backend)")
    args = parser.parse_args()

    # The app reads DATA_DIR when uvicorn imports it
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())
    if args.echo:
        os.environ["ROUNDTABLE_LLM_FORMAT"] = "echo"

    if args.demo:
        from roundtable.demo import create_demo_data
        from roundtable.storage import JsonStorage
        data_dir = args.data_dir or ROOT / "data"
        scene = asyncio.run(create_demo_data(JsonStorage(data_dir)))
        print(f"Demo scene '{scene.id}' created in {data_dir}")

    print(f"Starting server on http://localhost:{PORT} ...")
    uvicorn.run("roundtable.app:app", host=HOST, port=PORT, reload=not args.no_reload)


if __name__ == "__main__":
    main()
