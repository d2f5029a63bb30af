#!/usr/bin/env python3
"""
Entry point wrapper.

    python main.py --bank bank.json          # run the exam client
    python main.py admin <command> [...]     # teacher tools

Uses absolute imports so the same file works as a script and as the
entry point of a frozen executable.
"""

import sys
import os

if getattr(sys, 'frozen', False):
    # Running as compiled executable
    bundle_dir = sys._MEIPASS
else:
    # Running as script
    bundle_dir = os.path.dirname(os.path.abspath(__file__))

sys.path.insert(0, bundle_dir)

if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "admin":
        from exam_engine.admin import main
        sys.exit(main(sys.argv[2:]))

    from exam_engine.exam import main
    sys.exit(main())
