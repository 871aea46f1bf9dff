import os
import sys

# --- Path Setup ---
current_dir: str = os.path.dirname(os.path.abspath(__file__))
src_path: str = os.path.join(current_dir, "src")
sys.path.insert(0, src_path)

# --- Local Modules ---
from irukadark.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
