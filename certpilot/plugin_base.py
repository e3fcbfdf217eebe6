import importlib
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class PluginRegistry:
    """A central place to register and load plugins.

    Plugins that are derived from a base class are stored in that base class's registry.
    """

    PROJECT_BASE = "certpilot"

    _registry_map = dict()

    def __init__(self):
        self._subclasses = dict()

    @classmethod
    def load_plugins(cls, path: str) -> None:
        """Imports all modules of the given subpackage so that their plugins register themselves.

        A module that fails to import is skipped.

        :param path: The subpackage to load plugins from, e.g. *plugins*.
        """
        module_base_name = f"{cls.PROJECT_BASE}.{path}"
        try:
            importlib.import_module(module_base_name)
        except ModuleNotFoundError:
            logger.warning("Could not find the plugins package %s", module_base_name)
            return

        for module_path in sorted(Path(sys.modules[module_base_name].__file__).parent.glob("*.py")):
            if module_path.stem == "__init__":
                continue

            module_name = f"{module_base_name}.{module_path.stem}"
            logger.debug("Loading %s", module_name)
            try:
                importlib.import_module(module_name)
            except ImportError as e:
                logger.info("Loading %s failed: %s", module_name, e)

    @classmethod
    def get_registry(cls, plugin_parent_cls: type) -> "PluginRegistry":
        """Gets the plugin registry for the given parent class.

        :param plugin_parent_cls: The parent class.
        :return: The plugin registry for the given parent class.
        """
        return cls._registry_map.setdefault(plugin_parent_cls, PluginRegistry())

    @classmethod
    def register_plugin(cls, config_name):
        """Decorator that registers a class as a plugin under the given name.
        The name is used to refer to the class in config files.

        :param config_name: The plugin's name in config files
        :return: The registered plugin class.
        """

        def deco(plugin_cls):
            # find the parent class in the registry map
            for registered_parent, registry_ in cls._registry_map.items():
                if issubclass(plugin_cls, registered_parent):
                    registry = registry_
                    break
            else:
                registry = cls.get_registry(plugin_cls.__mro__[1])

            registry._subclasses[config_name] = plugin_cls

            return plugin_cls

        return deco

    def config_mapping(self) -> dict[str, type]:
        """Maps plugin config names to the plugin classes."""
        return self._subclasses

    def get_plugin(self, config_name) -> type:
        """Queries the registry for a plugin by config name.

        :param config_name: The plugin's config name
        :raises: :class:`ValueError` If no plugin is registered by the given name
        :return: The found plugin class
        """
        if config_name not in (plugin_names := self._subclasses.keys()):
            raise ValueError(
                f"The plugin {config_name} has not been registered. Valid options: "
                f"{', '.join([plugin for plugin in plugin_names])}."
            )

        return self._subclasses[config_name]
