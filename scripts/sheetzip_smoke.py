"""CLI helper posting a local workbook to a running SheetZip instance."""

from __future__ import annotations

import argparse
import json
import zipfile
from pathlib import Path

import httpx


def _run(args: argparse.Namespace) -> None:
    headers = {"X-API-Key": args.api_key} if args.api_key else {}
    data = {
        "headerRow": str(args.header_row),
        "sheetPrefix": args.sheet_prefix,
        "outputName": args.output_name,
    }
    if args.cfg:
        data["cfgJson"] = json.dumps(json.loads(args.cfg))

    with args.workbook.open("rb") as handle, httpx.Client(timeout=None) as client:
        files = {"file": (args.workbook.name, handle)}
        with client.stream(
            "POST", f"{args.base_url.rstrip('/')}/api/run", data=data, files=files, headers=headers
        ) as response:
            if response.status_code != 200:
                response.read()
                print("Request failed:", response.status_code, response.text)
                return
            print("Output id:", response.headers.get("x-output-id"))
            print("Output url:", response.headers.get("x-output-url"))
            with args.out.open("wb") as target:
                for chunk in response.iter_bytes():
                    target.write(chunk)

    with zipfile.ZipFile(args.out) as archive:
        names = archive.namelist()
    print(f"\nSaved {args.out} with {len(names)} entries:")
    for name in names:
        print(f"  {name}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("workbook", type=Path, help="Path to a local .xlsx file")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--header-row", type=int, default=6)
    parser.add_argument("--sheet-prefix", default="CT")
    parser.add_argument("--output-name", default="output_tong_hop")
    parser.add_argument("--cfg", default=None, help="Render config as JSON")
    parser.add_argument("--out", type=Path, default=Path("bang_cong_png.zip"))
    _run(parser.parse_args())


if __name__ == "__main__":  # pragma: no cover - manual tool
    main()
