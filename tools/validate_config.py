#!/usr/bin/env python3
"""
Validate a matrix configuration before a run.

Checks that the file parses against the configuration schema, that every
native command points at something runnable, that the browser bundle
directory exists, and prints how many cases each pairing will run or skip.
"""

import shutil
import sys
from collections import Counter
from pathlib import Path

from interop_harness.config import HarnessConfig
from interop_harness.matrix import expand_matrix, check_support
from interop_harness.utils.constants import EnvironmentKind


def main():
    config_path = Path(sys.argv[1] if len(sys.argv) > 1 else "matrix.yaml")
    try:
        config = HarnessConfig.load_from_file(str(config_path))
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    errors = []
    warnings = []

    for environment in config.environments:
        if environment.kind != EnvironmentKind.NATIVE:
            continue
        program = environment.command[0]
        if program == "{python}":
            script = next((part for part in environment.command[1:] if part.endswith(".py")), None)
            base = Path(environment.working_dir or ".")
            if script and not (base / script).exists():
                errors.append(f"{environment.name}: Script does not exist: {script}")
        elif "{" in program:
            warnings.append(f"{environment.name}: Program is templated, not checked: {program}")
        elif shutil.which(program) is None and not Path(program).exists():
            errors.append(f"{environment.name}: Program not found: {program}")

    bundle_dir = config.asset_server.bundle_dir
    if config.uses_browser() and bundle_dir and not Path(bundle_dir).is_dir():
        errors.append(f"asset_server.bundle_dir does not exist: {bundle_dir}")

    if errors:
        print("Errors:", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        sys.exit(1)

    if warnings:
        print("Warnings:", file=sys.stderr)
        for warning in warnings:
            print(f"  ⚠ {warning}", file=sys.stderr)

    runnable = Counter()
    skipped = Counter()
    for case in expand_matrix(config):
        pairing = f"{case.dialer} -> {case.listener}"
        if check_support(case, config) is None:
            runnable[pairing] += 1
        else:
            skipped[pairing] += 1

    print(f"✓ {config_path} is valid")
    for pairing in sorted(set(runnable) | set(skipped)):
        print(f"  {pairing}: {runnable[pairing]} to run, {skipped[pairing]} skipped")
    print(f"  Total: {sum(runnable.values())} to run, {sum(skipped.values())} skipped")
    sys.exit(0)


if __name__ == "__main__":
    main()
