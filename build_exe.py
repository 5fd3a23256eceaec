"""
Build script for the Coursework Sample Builder portable Windows .exe

Usage:
    python build_exe.py

Output:
    dist/Sample_Builder.exe   (portable, no installer needed)

Requirements:
    pip install pyinstaller>=6.0
"""

import subprocess
import sys
import shutil
import time
from pathlib import Path

ROOT = Path(__file__).parent
ICON = ROOT / "assets" / "icon.ico"
ENTRY = ROOT / "sample_builder_gui.py"
APP_NAME = "Sample_Builder"

HIDDEN_IMPORTS = [
    "pypdf",
    "PIL",
    "PIL._tkinter_finder",
    "docx",
    # pywin32 COM automation for Word conversion
    "win32com",
    "win32com.client",
    "pythoncom",
    "pywintypes",
]


def cleanup_build_dirs():
    """Safely remove build and dist directories to prevent PyInstaller cleanup errors."""
    for dirname in ["build", "dist"]:
        dirpath = ROOT / dirname
        if dirpath.exists():
            try:
                print(f"Cleaning {dirname}/ directory...")
                shutil.rmtree(dirpath)
            except PermissionError:
                print(f"  WARNING: Could not fully remove {dirname}/ (may be locked)")
                print("  Attempting to continue anyway...")
            time.sleep(0.5)


def build_command():
    """PyInstaller command line for the GUI entry point."""
    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--windowed",           # no console window
        "--clean",
        f"--name={APP_NAME}",
    ]
    cmd.extend(f"--hidden-import={name}" for name in HIDDEN_IMPORTS)
    if ICON.exists():
        cmd.append(f"--icon={ICON}")
    cmd.append(str(ENTRY))
    return cmd


def main():
    if not ENTRY.exists():
        print(f"ERROR: Entry point not found: {ENTRY}")
        sys.exit(1)

    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("PyInstaller not found. Installing...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "pyinstaller>=6.0"])

    cleanup_build_dirs()

    cmd = build_command()
    if not ICON.exists():
        print(f"INFO: No icon found at {ICON}, building without icon.")

    print("\n" + "=" * 60)
    print(f"Building {APP_NAME}.exe ...")
    print("=" * 60)
    print(" ".join(str(c) for c in cmd))
    print()

    result = subprocess.run(cmd, cwd=ROOT)

    if result.returncode != 0:
        print("\nERROR: PyInstaller build failed (see output above).")
        sys.exit(result.returncode)

    exe_path = ROOT / "dist" / f"{APP_NAME}.exe"
    print("\n" + "=" * 60)
    if exe_path.exists():
        size_mb = exe_path.stat().st_size / (1024 * 1024)
        print(f"SUCCESS: {exe_path}  ({size_mb:.1f} MB)")
    else:
        print(f"WARNING: Build finished but {exe_path} not found. Check PyInstaller output.")
    print("=" * 60)


if __name__ == "__main__":
    main()
