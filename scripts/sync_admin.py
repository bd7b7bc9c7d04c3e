"""Administrative snapshot transfers against a running training sync server."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api_client import ApiError, DataApiClient
from content_io import export_folder, export_snapshot, import_folder, parse_snapshot
from env_validation import ConfigurationError
from record_store import RecordStore, RecordValidationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="Server base URL (default: API_BASE_URL or http://localhost:8000)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Write the current snapshot (without the token) to a file")
    export.add_argument("output", type=str)

    load = commands.add_parser("import", help="Validate a snapshot file and replace all server data with it")
    load.add_argument("input", type=str)

    pull = commands.add_parser("pull-mirror", help="Replace server data with the mirrored GitHub file")
    pull.add_argument("--owner", type=str, default=None)
    pull.add_argument("--repo", type=str, default=None)
    pull.add_argument("--path", type=str, default=None)
    pull.add_argument("--pat", type=str, default=None, help="Token (default: settings or GITHUB_PAT)")

    publish = commands.add_parser("publish", help="Publish the current server data to the GitHub mirror")
    publish.add_argument("--pat", type=str, default=None, help="Token (default: settings or GITHUB_PAT)")

    commands.add_parser(
        "sync-mirror", help="Publish the current server data to the mirror using the server GITHUB_PAT"
    )

    folder_out = commands.add_parser("export-folder", help="Write one exam folder's questions to a file")
    folder_out.add_argument("category_id", type=str)
    folder_out.add_argument("output", type=str)

    folder_in = commands.add_parser("import-folder", help="Add questions from a folder file to an exam folder")
    folder_in.add_argument("category_id", type=str)
    folder_in.add_argument("input", type=str)
    return parser


async def _load_store(client: DataApiClient) -> RecordStore:
    return RecordStore.from_payload(await client.read())


def _token(store: RecordStore, override: str | None) -> str:
    return override or store.settings.github_pat or os.getenv("GITHUB_PAT") or ""


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    async with DataApiClient(args.base_url) as client:
        store = await _load_store(client)

        if args.command == "export":
            Path(args.output).write_text(export_snapshot(store) + "\n", encoding="utf-8")
            return {"exported": args.output}

        if args.command == "import":
            payload = parse_snapshot(Path(args.input).read_text(encoding="utf-8"))
            store.import_snapshot(payload, notify=False)
            await client.write_all(store.partitions())
            return {"imported": args.input, "users": len(store.users), "quizzes": len(store.quizzes)}

        if args.command == "pull-mirror":
            settings = store.settings
            owner = args.owner or settings.github_owner
            repo = args.repo or settings.github_repo
            path = args.path or settings.github_path
            pat = _token(store, args.pat)
            if not (owner and repo and path and pat):
                raise ConfigurationError("Missing GitHub configuration parameters.")
            store.import_snapshot(await client.fetch_mirror(owner, repo, path, pat), notify=False)
            await client.write_all(store.partitions())
            return {"pulled": f"{owner}/{repo}:{path}", "users": len(store.users)}

        if args.command == "publish":
            settings = {**store.settings.to_payload(), "githubPat": _token(store, args.pat)}
            return await client.publish_mirror(settings, store.snapshot_payload(include_credentials=False))

        if args.command == "sync-mirror":
            return await client.sync_mirror(store.snapshot_payload(include_credentials=False))

        if args.command == "export-folder":
            folder = export_folder(store, args.category_id)
            Path(args.output).write_text(json.dumps(folder, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
            return {"exported": args.output, "subtopics": len(folder)}

        if args.command == "import-folder":
            payload = json.loads(Path(args.input).read_text(encoding="utf-8"))
            added = import_folder(store, args.category_id, payload)
            await client.write_key("quizzes", store.partitions()["quizzes"])
            await client.write_key("moduleCategories", store.partitions()["moduleCategories"])
            return {"added": added}

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        result = asyncio.run(_run(args))
    except (ApiError, ConfigurationError, RecordValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (OSError, json.JSONDecodeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
