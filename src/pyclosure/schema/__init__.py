from .config import AppConfigModel, ConfigModel
