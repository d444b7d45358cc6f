from typing import Any, Callable, Dict, Generic, Type, TypeVar
import logging

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Registry(Generic[T]):
    """
    Name -> implementation table for one component base class.

    Schedulers register themselves under their ``SchedulerType`` value so
    that options files can select them by name. There is one registry per
    base class, shared process-wide.
    """

    _instances: Dict[Type, "Registry"] = {}

    def __init__(self, base_class: Type[T]):
        self.base_class = base_class
        self.registry: Dict[str, Type[T]] = {}

    @classmethod
    def get(cls, base_class: Type[T]) -> "Registry[T]":
        """Registry for ``base_class``, created on first use."""
        return cls._instances.setdefault(base_class, cls(base_class))

    def register(self, name: str, component_class: Type[T]) -> Type[T]:
        """
        Register ``component_class`` under ``name``.

        Raises:
            TypeError: if the class does not derive from the registry's base
        """
        if not issubclass(component_class, self.base_class):
            raise TypeError(
                f"{component_class.__name__} is not a subclass of {self.base_class.__name__}"
            )
        previous = self.registry.get(name)
        if previous is not None and previous is not component_class:
            logger.warning(f"Replacing {self.base_class.__name__} '{name}': "
                           f"{previous.__name__} -> {component_class.__name__}")
        self.registry[name] = component_class
        return component_class

    def create(self, name: str, config: Any) -> T:
        """
        Instantiate the class registered as ``name`` with ``config``.

        Raises:
            InvalidArgumentError: if nothing is registered under ``name``
        """
        component_class = self.registry.get(name)
        if component_class is None:
            raise InvalidArgumentError(
                f"No {self.base_class.__name__} registered as '{name}'. "
                f"Available: {sorted(self.registry)}"
            )
        return component_class(config)

    def list_available(self) -> Dict[str, Type[T]]:
        return dict(self.registry)


def register_component(name: str, base_class: Type[T]) -> Callable[[Type[T]], Type[T]]:
    """Class decorator: ``@register_component("LCM", Scheduler)``."""
    def decorator(component_class: Type[T]) -> Type[T]:
        return Registry.get(base_class).register(name, component_class)
    return decorator
