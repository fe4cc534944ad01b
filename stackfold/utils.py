from __future__ import annotations

import json
import os
import random
import re
import string
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from stackfold.constants import HOME_ENV_VAR, PROJECT_NAME, STATE_FILE_NAME


def camel_to_kebab(name: str) -> str:
    """
    Converts a camel case string to kebab case.

    Args:
        name (str): The camel case string to be converted.

    Returns:
        str: The kebab case string.

    Example:
        >>> camel_to_kebab("camelCaseString")
        'camel-case-string'
    """
    name = re.sub("(.)([A-Z][a-z]+)", r"\1-\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1-\2", name).lower()


def get_project_data_dir() -> str:
    """
    Get the project data directory.

    If the environment variable HOME_ENV_VAR is set, it returns its value.
    Otherwise, it returns the home directory appended with the kebab-case project name.

    Returns:
        str: The absolute path of the project data directory.
    """
    return os.environ.get(
        HOME_ENV_VAR, str(Path.home() / f".{camel_to_kebab(PROJECT_NAME)}")
    )


def get_stack_data_dir(stack_name: str) -> str:
    """
    Get the data directory of a stack.

    Args:
        stack_name (str): The name of the stack.

    Returns:
        str: The stack data directory.
    """
    return os.path.join(get_project_data_dir(), "stacks", stack_name)


def get_default_state_file(stack_name: str) -> str:
    return os.path.join(get_stack_data_dir(stack_name), STATE_FILE_NAME)


def write_json_atomic(path: str, data: Dict[str, Any]) -> None:
    """
    Writes a JSON document so that readers only ever observe the old or the new content.

    The document is written to a temporary file in the same directory, flushed to disk
    and then renamed over the destination.

    Args:
        path (str): The destination file.
        data (Dict[str, Any]): The JSON serializable document.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_file = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as tf:
            json.dump(data, tf, indent=2, sort_keys=True)
            tf.write("\n")
            tf.flush()
            os.fsync(tf.fileno())
        os.replace(tmp_file, path)
    except BaseException:
        if os.path.exists(tmp_file):
            os.remove(tmp_file)
        raise


def random_str(length: int = 5) -> str:
    """
    Generate a random string of a specified length.

    The string consists of both ASCII letters (both lowercase and uppercase) and digits.

    Args:
        length (int, optional): The length of the random string to be generated. Defaults to 5.

    Returns:
        str: The generated random string.
    """
    return "".join(random.choices(string.ascii_letters + string.digits, k=length))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
