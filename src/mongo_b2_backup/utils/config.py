"""
config handling for dynaconf
"""
import os
import sys
from importlib.resources import files
from pathlib import Path

from dynaconf import Dynaconf, Validator
from loguru import logger

from mongo_b2_backup.mongo.dumper import DumpTarget
from mongo_b2_backup.pipeline.diff import DiffMode
from mongo_b2_backup.storage.base import StoreTarget


def parse_config(config_folder: Path) -> Dynaconf:
    """
    Parse config with dynaconf.
    The default config is created in the config folder on the first start.
    :param config_folder: folder with default.toml and config.toml
    :return: settings
    """
    default_config = config_folder / 'default.toml'
    if not os.path.isfile(default_config):
        try:
            config_folder.mkdir(parents=True, exist_ok=True)
            with open(default_config, 'w', encoding='utf-8') as f:
                f.write(files('mongo_b2_backup.data').joinpath('default.toml').read_text())
        except OSError as e:
            logger.critical(f'Failed to create default config {default_config}. '
                            'Consider creating the folder writeable for this user '
                            f'or choose a different path. Error: {e}')
            sys.exit(1)

    settings = Dynaconf(
        envvar_prefix='MONGO_B2_BACKUP',
        settings_files=['default.toml', 'config.toml'],
        root_path=str(config_folder),
        merge_enabled=True,
        validators=[
            Validator('mongo.uri', must_exist=True),
            Validator('mongo.target', is_in=[x.value for x in DumpTarget], default='Local'),
            Validator('backup.dir', must_exist=True, cast=Path),
            Validator('backup.target', is_in=[x.value for x in StoreTarget], default='B2'),
            Validator('backup.chunk_size', cast=int, default=10 * 1024 * 1024, gt=0),
            Validator('backup.diff_mode', is_in=[x.value for x in DiffMode], default='folder'),
            Validator('backup.interval_hours', cast=float, default=12, gt=0),
            Validator('upload.max_retries', cast=int, default=5, gte=1),
            Validator('upload.single_shot_threshold', cast=int, default=100 * 1024 * 1024,
                      gt=0),
            Validator('upload.part_size', cast=int, default=100 * 1024 * 1024, gt=0),
            # B2 credentials are only required for the B2 target
            Validator('b2.key_id', 'b2.application_key', 'b2.bucket_name',
                      must_exist=True, ne='', when=Validator('backup.target', eq='B2')),
            Validator('backup.disk_dir', must_exist=True, ne='',
                      when=Validator('backup.target', eq='Disk')),
        ]
    )
    return settings
