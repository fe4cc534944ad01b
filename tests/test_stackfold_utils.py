import json
import os
from typing import Any
from unittest.mock import patch

import pytest

from stackfold.utils import (
    camel_to_kebab,
    get_default_state_file,
    get_project_data_dir,
    random_str,
    write_json_atomic,
)


def test_camel_to_kebab() -> None:
    assert camel_to_kebab("camelCaseString") == "camel-case-string"
    assert camel_to_kebab("Stackfold") == "stackfold"


def test_get_project_data_dir(monkeypatch: Any) -> None:
    monkeypatch.setenv("STACKFOLD_HOME", "/tmp/stackfold-home")
    assert get_project_data_dir() == "/tmp/stackfold-home"

    monkeypatch.delenv("STACKFOLD_HOME")
    assert get_project_data_dir().endswith(os.sep + ".stackfold")


def test_get_default_state_file(monkeypatch: Any) -> None:
    monkeypatch.setenv("STACKFOLD_HOME", "/data")

    assert get_default_state_file("demo") == os.path.join(
        "/data", "stacks", "demo", "state.json"
    )


def test_write_json_atomic(tmp_path: Any) -> None:
    path = str(tmp_path / "nested" / "doc.json")

    write_json_atomic(path, {"serial": 1})
    write_json_atomic(path, {"serial": 2})

    with open(path) as f:
        assert json.load(f) == {"serial": 2}
    assert os.listdir(tmp_path / "nested") == ["doc.json"]


def test_write_json_atomic_keeps_old_content_on_failure(tmp_path: Any) -> None:
    path = str(tmp_path / "doc.json")
    write_json_atomic(path, {"serial": 1})

    with patch("os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            write_json_atomic(path, {"serial": 2})

    with open(path) as f:
        assert json.load(f) == {"serial": 1}
    assert os.listdir(tmp_path) == ["doc.json"]


def test_random_str() -> None:
    assert len(random_str()) == 5
    assert len(random_str(12)) == 12
