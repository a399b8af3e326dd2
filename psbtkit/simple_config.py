import json
import threading
import os
import stat
from typing import Union, Optional, Dict, Sequence, Any

from copy import deepcopy

from .logging import Logger


_config_var_from_key = {}  # type: Dict[str, 'ConfigVar']


class ConfigVar(property):
    """A typed config key, accessed as an attribute of SimpleConfig.
    Assigning None removes the key, so that the default applies again.
    """

    def __init__(self, key: str, *, default: Any, type_: type = None):
        self._key = key
        self._default = default
        self._type = type_
        property.__init__(self, self._get_config_value, self._set_config_value)
        assert key not in _config_var_from_key, f"duplicate config key str: {key!r}"
        _config_var_from_key[key] = self

    def _get_config_value(self, config: 'SimpleConfig'):
        with config.lock:
            if not config.is_set(self._key):
                return self._default
            value = config.get(self._key)
            if self._type is None:
                return value
            try:
                return self._type(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"config value for {self._key!r} is not a valid {self._type.__name__}: "
                                 f"{value!r}") from e

    def _set_config_value(self, config: 'SimpleConfig', value):
        if self._type is not None and value is not None and not isinstance(value, self._type):
            raise ValueError(f"config value for {self._key!r} must be {self._type.__name__}, "
                             f"not {value!r}")
        config.set_key(self._key, value)

    def key(self) -> str:
        return self._key

    def __repr__(self):
        return f"<ConfigVar key={self._key!r}>"


class SimpleConfig(Logger):
    """
    Settings for parsing PSBTs and for logging.

    There are two different sources of possible configuration values:
        1. Options passed in by the host application (e.g. from its command line).
        2. User configuration (the JSON file "config" in the data directory)
    They are taken in order (1. overrides config options set in 2.),
    and options of type 1 cannot be changed through the config.

    Without a data directory ('psbtkit_path'), the config lives in memory only.
    """

    def __init__(self, options=None, read_user_config_function=None):
        if options is None:
            options = {}
        for config_key in options:
            assert isinstance(config_key, str), f"{config_key=!r} has type={type(config_key)}, expected str"

        Logger.__init__(self)

        # guards user_config, which may be changed from several threads
        self.lock = threading.RLock()

        # for dependency injection when testing
        if read_user_config_function is None:
            read_user_config_function = read_user_config

        self.cmdline_options = deepcopy(options)

        self.user_config = {}  # for self.get in psbtkit_path()
        self.path = self.psbtkit_path()
        self.user_config = read_user_config_function(self.path)

        self._init_done = True

    def list_config_vars(self) -> Sequence[str]:
        return sorted(_config_var_from_key)

    def psbtkit_path(self) -> Optional[str]:
        path = self.get('psbtkit_path')
        if path:
            os.makedirs(path, exist_ok=True)
            self.logger.info(f"psbtkit directory {path}")
        return path

    def set_key(self, key: Union[str, ConfigVar], value, *, save=True) -> None:
        """Sets an arbitrary string config key. Prefer the ConfigVars."""
        if isinstance(key, ConfigVar):
            key = key.key()
        assert isinstance(key, str), key
        if not self.is_modifiable(key):
            self.logger.warning(f"not changing config key '{key}' set on the command line")
            return
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            self.logger.info(f"json error: cannot save {key!r} ({value!r})")
            return
        with self.lock:
            if value is not None:
                self.user_config[key] = value
            else:
                self.user_config.pop(key, None)
            if save:
                self.save_user_config()

    def get(self, key: str, default=None) -> Any:
        """Gets an arbitrary string config key. Prefer the ConfigVars."""
        assert isinstance(key, str), key
        with self.lock:
            out = self.cmdline_options.get(key)
            if out is None:
                out = self.user_config.get(key, default)
        return out

    def is_set(self, key: Union[str, ConfigVar]) -> bool:
        """Returns whether the config key has any explicit value set/defined."""
        if isinstance(key, ConfigVar):
            key = key.key()
        return self.get(key, default=...) is not ...

    def is_modifiable(self, key: Union[str, ConfigVar]) -> bool:
        if isinstance(key, ConfigVar):
            key = key.key()
        return key not in self.cmdline_options

    def save_user_config(self):
        if not self.path:
            return
        path = os.path.join(self.path, "config")
        s = json.dumps(self.user_config, indent=4, sort_keys=True)
        try:
            with open(path, "w", encoding='utf-8') as f:
                os.chmod(path, stat.S_IREAD | stat.S_IWRITE)  # set restrictive perms *before* we write data
                f.write(s)
        except OSError:
            # datadir probably deleted while running
            if os.path.exists(self.path):
                raise

    def __setattr__(self, name, value):
        """Disallows setting instance attributes outside __init__,
        so that a mistyped ConfigVar such as config.PSBT_MAX_KEY_LENGHT raises.
        """
        if not getattr(self, "_init_done", False) or hasattr(self, name):
            return super().__setattr__(name, value)
        raise AttributeError(
            f"Tried to define new instance attribute for config: {name=!r}. "
            "Did you perhaps mistype a ConfigVar?"
        )

    # config variables ----->

    PSBT_MAX_KEY_LENGTH = ConfigVar('psbt_max_key_length', default=10_000, type_=int)  # in bytes
    PSBT_MAX_VALUE_LENGTH = ConfigVar('psbt_max_value_length', default=4_000_000, type_=int)  # in bytes
    PSBT_MAX_KEY_TYPE = ConfigVar('psbt_max_key_type', default=0x02000000, type_=int)
    PSBT_DEBUG_PARSING = ConfigVar('psbt_debug_parsing', default=False, type_=bool)

    LOG_VERBOSITY = ConfigVar('verbosity', default=None, type_=str)
    LOG_VERBOSITY_SHORTCUTS = ConfigVar('verbosity_shortcuts', default=None, type_=str)
    LOG_TO_FILE = ConfigVar('log_to_file', default=False, type_=bool)


def read_user_config(path: Optional[str]) -> Dict[str, Any]:
    """Reads the JSON "config" file of the data directory, if there is one."""
    if not path:
        return {}
    config_path = os.path.join(path, "config")
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            result = json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"Invalid config file at {config_path}: {e}") from e
    if not isinstance(result, dict):
        raise ValueError(f"Invalid config file at {config_path}: not a dict")
    return result
