from pathlib import Path

from router.__main__ import build_settings, parse_args


def test_defaults_come_from_config():
    args = parse_args([])
    assert args.port == 5001
    assert not args.debug


def test_flags_override_hub_settings(tmp_path):
    state = tmp_path / "state.json"
    args = parse_args(["--local-address", "http://127.0.0.1:11434", "--no-local", "--state-file", str(state)])

    settings = build_settings(args)

    assert settings.local_address == "http://127.0.0.1:11434"
    assert settings.local_enabled is False
    assert settings.state_file == Path(state)
