#!/usr/bin/env python3
"""Architecture enforcement checks for dnarouter.

This script runs as part of CI/pre-commit to catch architectural violations.
Exit code 0 = all checks passed, non-zero = violations found.

Violations:
1. Process-local concurrency limits in stages or the orchestrator (admission is fleet-wide, in Redis)
2. Raw admission acquire/release outside the admission controller (use `slot()`)
3. Inference SDK clients built outside modules/models
4. Reading the OpenAI key outside the models/config layers
"""

import subprocess
import sys
from pathlib import Path

PKG = "src/dnarouter"

# Patterns that violate architecture
VIOLATIONS = [
    {
        "name": "Process-local concurrency limit",
        "pattern": r"asyncio\.(Semaphore|BoundedSemaphore)\s*\(",
        "paths": [f"{PKG}/modules/stages", f"{PKG}/orchestrator", f"{PKG}/service"],
        "message": "Invocations may run anywhere in the fleet. Gate API calls with `AdmissionController.slot()`.",
        "exclude": [],
    },
    {
        "name": "Raw admission acquire",
        "pattern": r"admission\.(acquire|acquire_with_backoff)\s*\(",
        "paths": [f"{PKG}/modules/stages", f"{PKG}/orchestrator", f"{PKG}/service"],
        "message": "Use `async with admission.slot(user_id):` so the ticket is released on every exit path.",
        "exclude": [],
    },
    {
        "name": "Manual ticket release",
        "pattern": r"admission\.release\s*\(",
        "paths": [f"{PKG}/modules/stages", f"{PKG}/orchestrator", f"{PKG}/service"],
        "message": "Tickets are released by `slot()`; leaked tickets are reclaimed by `audit_leaks()`.",
        "exclude": [],
    },
    {
        "name": "Direct inference client instantiation",
        "pattern": r"(ChatOpenAI|AsyncOpenAI|OpenAI)\s*\(",
        "paths": [f"{PKG}/modules/stages", f"{PKG}/orchestrator", f"{PKG}/service", f"{PKG}/cli"],
        "message": "Stages talk to the API through `InferenceClient`; build it in modules/models.",
        "exclude": ["OpenAIInferenceClient("],
    },
    {
        "name": "OpenAI key read outside models",
        "pattern": r"openai\.api_key",
        "paths": [f"{PKG}/modules/stages", f"{PKG}/orchestrator", f"{PKG}/service", f"{PKG}/cli"],
        "message": "Pass `config.openai` to `OpenAIInferenceClient` and let it validate credentials.",
        "exclude": [],
    },
]


def run_grep(pattern: str, path: str, exclude: list[str]) -> list[str]:
    """Run ripgrep and return matching files with line numbers."""
    cmd = ["rg", "--no-heading", "--line-number", "--color=never", pattern, path]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        # ripgrep not available, try grep
        cmd = ["grep", "-rn", "-E", pattern, path]
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        return []
    lines = result.stdout.strip().split("\n")
    return [line for line in lines if not any(exc in line for exc in exclude)]


def main() -> int:
    """Run all architecture checks."""
    project_root = Path(__file__).parent.parent
    pkg_path = project_root / PKG

    if not pkg_path.exists():
        print(f"Path not found: {pkg_path}")
        return 1

    violations_found = 0

    print("Running architecture enforcement checks...")
    print(f"   Checking: {pkg_path}\n")

    for check in VIOLATIONS:
        matches: list[str] = []
        for rel in check["paths"]:
            path = project_root / rel
            if path.exists():
                matches.extend(run_grep(check["pattern"], str(path), check.get("exclude", [])))

        if matches:
            violations_found += len(matches)
            print(f"FAIL {check['name']}")
            print(f"   -> {check['message']}")
            print()
            for match in matches:
                print(f"   {match}")
            print()

    if violations_found == 0:
        print("All architecture checks passed!")
        return 0
    print(f"\nFound {violations_found} violation(s). Please fix before committing.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
