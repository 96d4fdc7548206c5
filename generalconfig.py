"""
Global vars
"""

import json
import os
import sys

VERSION = "Release 1.0.0"

DEFAULT_QUALITY = 75.0
# Only honoured at quality 100 with no compression factor
DEFAULT_LOSSLESS = True
DEFAULT_COMPRESSION_FACTOR = 2.0
SINGLE_FILE_COMPRESSION_FACTOR = 0.0
DEFAULT_PSNR = 40.0
DEFAULT_RESIZE = False
DEFAULT_RECURSIVE = False

CONFIG_FILE = os.environ.get("WEBP_CONVERTER_CONFIG", "webpconverter.json")


def load_config_json(config_file=CONFIG_FILE):
    if not os.path.isfile(config_file):
        return {}
    try:
        with open(config_file, encoding="utf-8") as config:
            return json.load(config)
    except (OSError, ValueError) as exception:
        sys.exit("Config error! %s" % exception)


other_configs: dict = load_config_json()

#### LOADED FROM webpconverter.json config
sentry_dsn = other_configs.get("sentryDsn")  # Optional
environment = other_configs.get("environment", "production")
workers = other_configs.get("workers")  # None = all cores but one
defaults: dict = other_configs.get("defaults", {})
