from .params import ConfigError, Params, get_defaults, merge_options

__all__ = ["ConfigError", "Params", "get_defaults", "merge_options"]
