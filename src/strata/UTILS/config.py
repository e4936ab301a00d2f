# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Settings loading from a YAML file, a .env file and the environment.
"""
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, get_origin

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.settings import StrataSettings
from .errors import ConfigurationError

ENV_PREFIX = "STRATA_"
DEFAULT_CONFIG_FILE = "strata.yml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _from_environment(source: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """
    Picks ``STRATA_<FIELD>`` keys. List fields are comma separated.
    """
    values: Dict[str, Any] = {}
    for name, field in StrataSettings.model_fields.items():
        raw = source.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if get_origin(field.annotation) is list:
            values[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            values[name] = raw
    return values


def load_settings(config_file: Optional[str] = None,
                  env_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> StrataSettings:
    """
    Builds settings from, lowest precedence first: defaults, the YAML config
    file, the dotenv file, then the process environment.

    Args:
        config_file: Explicit YAML path. Falls back to ``$STRATA_CONFIG`` and
            then ``./strata.yml`` when it exists.
        env_file: Dotenv path. Defaults to ``./.env`` when it exists.
        environ: Environment mapping, ``os.environ`` by default.

    Returns:
        StrataSettings: Validated settings.

    Raises:
        ConfigurationError: If a file is unreadable or a value is invalid.
    """
    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = {}

    path = config_file or environ.get(ENV_PREFIX + "CONFIG")
    if path:
        if not os.path.exists(path):
            raise ConfigurationError(f"Config file not found: {path}", config_key="config")
        merged.update(_read_yaml(Path(path)))
    elif os.path.exists(DEFAULT_CONFIG_FILE):
        merged.update(_read_yaml(Path(DEFAULT_CONFIG_FILE)))

    if env_file is None and os.path.exists(".env"):
        env_file = ".env"
    if env_file:
        if not os.path.exists(env_file):
            raise ConfigurationError(f"Env file not found: {env_file}", config_key="env_file")
        merged.update(_from_environment(dotenv_values(env_file)))

    merged.update(_from_environment(environ))

    unknown = set(merged) - set(StrataSettings.model_fields)
    if unknown:
        key = sorted(unknown)[0]
        raise ConfigurationError(f"Unknown setting: {key}", config_key=key)

    try:
        return StrataSettings(**merged)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"])
        raise ConfigurationError(f"Invalid value for {key}: {first['msg']}", config_key=key)
