import os

from dotenv import load_dotenv
from hydra import compose, initialize
from hydra.core.hydra_config import HydraConfig
from omegaconf import OmegaConf


def load_hydra_config(version_base=None, config_path="../../conf", config_name="config.yaml"):
    with initialize(version_base=version_base, config_path=config_path):
        cfg = compose(config_name=config_name, return_hydra_config=True)
        HydraConfig.instance().set_config(cfg)
    return cfg


def init_env(cfg):
    # .env values never override variables already set in the environment
    load_dotenv(override=False)
    if "env" not in cfg or not cfg.env:
        return
    for item in cfg.env:
        if item.value is not None:
            os.environ.setdefault(item.name, str(item.value))


def to_container(cfg):
    return OmegaConf.to_container(cfg, resolve=True)


conf = load_hydra_config()
init_env(conf)
