"""
YAML configuration for the SVD-softmax benchmark.
"""

import os

import yaml

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                   'configs', 'default.yaml')


def load_config(config_path: str = None, overrides: dict = None) -> dict:
    """
    Load a YAML config on top of the packaged defaults.

    Keys in `config_path` replace the defaults; `overrides` (e.g. from the
    command line) replace both.
    """
    with open(DEFAULT_CONFIG_PATH, 'r') as f:
        config = yaml.safe_load(f)

    if config_path is not None and os.path.abspath(config_path) != DEFAULT_CONFIG_PATH:
        if not os.path.isfile(config_path):
            raise FileNotFoundError(f"Config not found: {config_path}")
        with open(config_path, 'r') as f:
            config.update(yaml.safe_load(f) or {})

    if overrides:
        config.update(overrides)
    return config
