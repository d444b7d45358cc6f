from typing import Any, Type

from .component import Component
from .registry import Registry


class ComponentFactory:
    """Builds registered components by name, e.g. schedulers from ``scheduler_type``."""

    @staticmethod
    def create_component(component_type: str, config: Any, base_class: Type = Component) -> Any:
        """
        Instantiate ``component_type`` from the registry of ``base_class``.

        Args:
            component_type: Registered name (``SchedulerOptions.scheduler_type`` for schedulers)
            config: Passed to the constructor unchanged; an options object or dict

        Raises:
            InvalidArgumentError: if the name is not registered
        """
        return Registry.get(base_class).create(component_type, config)
