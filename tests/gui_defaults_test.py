from pathlib import Path

import build_exe

ROOT = Path(__file__).resolve().parent.parent


def test_gui_defaults_match_engine_defaults():
    source = (ROOT / "sample_builder_gui.py").read_text(encoding="utf-8")
    assert "self.batch_size = tk.IntVar(value=DEFAULT_BATCH_SIZE)" in source
    assert "self.collision_policy = tk.StringVar(value=CollisionPolicy.SKIP.value)" in source
    assert "self.recursive = tk.BooleanVar(value=False)" in source


def test_build_command_targets_gui_entry_point():
    cmd = build_exe.build_command()

    assert cmd[-1].endswith("sample_builder_gui.py")
    assert "--hidden-import=pypdf" in cmd
    assert "--hidden-import=docx" in cmd
    assert not any("extract_msg" in part for part in cmd)
