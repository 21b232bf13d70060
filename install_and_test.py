"""Install metastat with its test extra and run the unit and pipeline suites."""
import subprocess
import sys

STEPS = [
    ("Installing metastat with test dependencies", ["-m", "pip", "install", "-e", ".[test]"]),
    ("Running unit tests", ["-m", "pytest", "tests/unit", "--cov=metastat", "--cov-report=term-missing"]),
    ("Running pipeline tests", ["-m", "pytest", "tests/integration", "-m", "integration"]),
]


def main() -> int:
    for description, args in STEPS:
        print(f"\n== {description} ==")
        returncode = subprocess.call([sys.executable, *args])
        if returncode != 0:
            print(f"❌ {description} failed (exit code {returncode})")
            return returncode
    print("\n✅ metastat installed and all tests passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
