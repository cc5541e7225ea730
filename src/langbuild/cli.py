import argparse
import sys
from pathlib import Path
from typing import List

from langbuild.errors import BuildValidationError, StageError
from langbuild.flow import build_batch_flow, build_flow
from langbuild.results import BuildResult
from langbuild.toolchain import ToolStatus, probe_toolchain


def print_summary(results: List[BuildResult]) -> None:
    ok = sum(1 for r in results if r.status == "ok")
    failed = len(results) - ok

    print("\nBatch Summary")
    print("=" * 40)
    print(f"Total   : {len(results)}")
    print(f"Success : {ok}")
    print(f"Failed  : {failed}")
    print()

    for r in results:
        if r.status == "ok":
            print(f"- {r.source_dir}: {r.out_path}")
    if failed:
        print("\nFailures:")
        for r in results:
            if r.status == "failed":
                stage = f" [{r.failed_stage}]" if r.failed_stage else ""
                print(f"- {r.source_dir}{stage} {r.error_type}:\n{r.error_message}")
        print()


def print_toolchain(tools: List[ToolStatus]) -> None:
    for t in tools:
        state = t.version if t.available else f"UNAVAILABLE ({t.error})"
        print(f"{t.stage:<8} {t.command}: {state}")


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Build grammar/lexer/interpreter sources into a web module bundle"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_build = sub.add_parser("build", help="Build one source directory")
    p_build.add_argument("source_dir", type=Path, help="Directory holding parser.y, lexer.l, interpreter.c, README, example")
    p_build.add_argument("-o", "--out", type=Path, default=Path("build-output.zip"), help="Bundle output path")

    p_batch = sub.add_parser("batch", help="Build several source directories, best-effort")
    p_batch.add_argument("source_dirs", type=Path, nargs="+")
    p_batch.add_argument("--out-dir", type=Path, default=Path("out"), help="Directory for the bundles")

    sub.add_parser("doctor", help="Check that the toolchain is installed")

    args = parser.parse_args(argv)

    if args.command == "doctor":
        tools = probe_toolchain()
        print_toolchain(tools)
        return 0 if all(t.available for t in tools) else 1

    if args.command == "build":
        try:
            print(build_flow(str(args.source_dir), str(args.out)))
        except (BuildValidationError, StageError, OSError) as e:
            print(e.report() if isinstance(e, StageError) else str(e), file=sys.stderr)
            return 1
        return 0

    results = build_batch_flow([str(d) for d in args.source_dirs], str(args.out_dir))
    print_summary(results)
    return 0 if all(r.status == "ok" for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
