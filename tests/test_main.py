import json

import pytest

from main import EXIT_CORRUPT_STATE, main


def test_status_prints_counts(state_path, capsys):
    with open(state_path, "w") as f:
        json.dump({"version": 1, "videos": {
            "A": {"duration_seconds": 40, "is_short": True, "resolved_at": 1},
            "B": {"duration_seconds": 611, "is_short": False, "resolved_at": 2},
        }}, f)

    main(["status", "--state", state_path])

    out = capsys.readouterr().out
    assert "Videos: 2" in out
    assert "Shorts: 1" in out


def test_corrupt_state_exit_status_differs_from_usage_errors(state_path):
    with open(state_path, "w") as f:
        f.write("{truncated")

    with pytest.raises(SystemExit) as excinfo:
        main(["status", "--state", state_path])

    assert excinfo.value.code == EXIT_CORRUPT_STATE == 3


def test_resolve_without_ids_is_a_usage_error(state_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["resolve", "--state", state_path])

    assert excinfo.value.code == 2
