"""
Service registry with lazy loading and dependency resolution

Factories are registered with the names of the services they need; the registry
resolves those names on first use and passes the instances as keyword arguments.
"""
from typing import Dict, Any, Callable, Optional, Set, List
from enum import Enum
import threading
import logging

logger = logging.getLogger(__name__)


class ServiceLifecycle(Enum):
    """Service lifecycle management options"""
    SINGLETON = "singleton"  # Single instance per application
    TRANSIENT = "transient"  # New instance per get()


class ServiceDescriptor:
    """Describes a service registration"""

    def __init__(
        self,
        name: str,
        factory: Optional[Callable] = None,
        instance: Optional[Any] = None,
        lifecycle: ServiceLifecycle = ServiceLifecycle.SINGLETON,
        dependencies: Optional[List[str]] = None,
        tags: Optional[Set[str]] = None
    ):
        self.name = name
        self.factory = factory
        self.instance = instance
        self.lifecycle = lifecycle
        self.dependencies = dependencies or []
        self.tags = tags or set()
        self.lock = threading.RLock()


class ServiceRegistryEnhanced:
    """
    Lazy service registry.

    Features:
    - Factory registration with named dependencies
    - Singleton and transient lifecycles
    - Thread-safe singleton creation
    - Circular dependency detection
    - Instance invalidation along dependency chains (used by tests that swap
      the database session)
    """

    def __init__(self):
        self._descriptors: Dict[str, ServiceDescriptor] = {}
        self._thread_local = threading.local()
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        service: Any = None,
        factory: Callable = None,
        lifecycle: ServiceLifecycle = ServiceLifecycle.SINGLETON,
        dependencies: Optional[List[str]] = None,
        tags: Optional[Set[str]] = None
    ) -> None:
        """
        Register a service instance or a factory.

        Args:
            name: Service identifier
            service: Pre-instantiated service
            factory: Factory function for lazy loading
            lifecycle: Service lifecycle type
            dependencies: Names passed to the factory as keyword arguments
            tags: Set of tags for grouping
        """
        if service is None and factory is None:
            raise ValueError(f"Either service instance or factory must be provided for '{name}'")

        descriptor = ServiceDescriptor(
            name=name,
            factory=factory,
            instance=service,
            lifecycle=lifecycle,
            dependencies=dependencies,
            tags=tags
        )

        with self._lock:
            self._descriptors[name] = descriptor

    def register_factory(
        self,
        name: str,
        factory: Callable,
        lifecycle: ServiceLifecycle = ServiceLifecycle.SINGLETON,
        dependencies: Optional[List[str]] = None,
        tags: Optional[Set[str]] = None
    ) -> None:
        self.register(
            name=name,
            factory=factory,
            lifecycle=lifecycle,
            dependencies=dependencies,
            tags=tags
        )

    def register_singleton(self, name: str, factory: Callable, **kwargs) -> None:
        """Register a singleton service factory"""
        self.register_factory(name, factory, ServiceLifecycle.SINGLETON, **kwargs)

    def register_transient(self, name: str, factory: Callable, **kwargs) -> None:
        """Register a transient service factory"""
        self.register_factory(name, factory, ServiceLifecycle.TRANSIENT, **kwargs)

    def get(self, name: str) -> Any:
        """
        Get a service by name, creating it and its dependencies on first use.

        Raises:
            ValueError: If service is not registered
            RuntimeError: If circular dependency detected
        """
        if name not in self._descriptors:
            raise ValueError(f"Service '{name}' is not registered")

        descriptor = self._descriptors[name]
        stack = self._initialization_stack()
        if name in stack:
            cycle = " -> ".join(stack + [name])
            raise RuntimeError(f"Circular dependency detected: {cycle}")

        if descriptor.lifecycle == ServiceLifecycle.TRANSIENT:
            return self._create_instance(descriptor)
        return self._get_singleton(descriptor)

    def _initialization_stack(self) -> List[str]:
        if not hasattr(self._thread_local, 'initialization_stack'):
            self._thread_local.initialization_stack = []
        return self._thread_local.initialization_stack

    def _get_singleton(self, descriptor: ServiceDescriptor) -> Any:
        if descriptor.instance is not None:
            return descriptor.instance

        with descriptor.lock:
            # Double-check after acquiring the lock
            if descriptor.instance is None:
                descriptor.instance = self._create_instance(descriptor)
            return descriptor.instance

    def _create_instance(self, descriptor: ServiceDescriptor) -> Any:
        if descriptor.factory is None:
            raise ValueError(f"No factory registered for '{descriptor.name}'")

        stack = self._initialization_stack()
        stack.append(descriptor.name)
        try:
            deps = {dep: self.get(dep) for dep in descriptor.dependencies}
            instance = descriptor.factory(**deps)
            logger.debug(f"Created service instance: {descriptor.name}")
            return instance
        finally:
            stack.pop()

    def get_all_by_tag(self, tag: str) -> Dict[str, Any]:
        return {
            name: self.get(name)
            for name, descriptor in self._descriptors.items()
            if tag in descriptor.tags
        }

    def has(self, name: str) -> bool:
        """Check if a service is registered"""
        return name in self._descriptors

    def list_services(self) -> List[str]:
        return sorted(self._descriptors.keys())

    def get_service_info(self, name: str) -> Dict[str, Any]:
        if name not in self._descriptors:
            raise ValueError(f"Service '{name}' is not registered")

        descriptor = self._descriptors[name]
        return {
            'name': descriptor.name,
            'lifecycle': descriptor.lifecycle.value,
            'dependencies': list(descriptor.dependencies),
            'tags': sorted(descriptor.tags),
            'is_instantiated': descriptor.instance is not None,
            'has_factory': descriptor.factory is not None
        }

    # Invalidation

    def reset_service(self, name: str) -> None:
        """Drop a cached singleton so the next get() rebuilds it"""
        descriptor = self._descriptors.get(name)
        if descriptor is None or descriptor.factory is None:
            return
        with descriptor.lock:
            descriptor.instance = None

    def clear_all_instances(self) -> None:
        """Drop every factory-built singleton; registrations stay in place"""
        for name in list(self._descriptors):
            self.reset_service(name)

    def clear_dependency_chain(self, name: str) -> List[str]:
        """
        Drop the instance of ``name`` and of every service that depends on it,
        directly or transitively.

        Returns:
            Names of the services that were reset
        """
        dependents: Dict[str, List[str]] = {}
        for service_name, descriptor in self._descriptors.items():
            for dep in descriptor.dependencies:
                dependents.setdefault(dep, []).append(service_name)

        reset = []
        pending = [name]
        while pending:
            current = pending.pop()
            if current in reset:
                continue
            self.reset_service(current)
            reset.append(current)
            pending.extend(dependents.get(current, []))
        return reset

    # Introspection

    def validate_dependencies(self) -> List[str]:
        """
        Validate all service dependencies are registered.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for name, descriptor in self._descriptors.items():
            for dep in descriptor.dependencies:
                if dep not in self._descriptors:
                    errors.append(f"Service '{name}' depends on unregistered service '{dep}'")
        return errors

    def get_dependency_graph(self) -> Dict[str, List[str]]:
        return {
            name: descriptor.dependencies.copy()
            for name, descriptor in self._descriptors.items()
        }

    def get_initialization_order(self) -> List[str]:
        """
        Topological order of all registered services.

        Raises:
            RuntimeError: If circular dependency exists
        """
        graph = self.get_dependency_graph()
        visited = set()
        order = []

        def visit(node: str, path: List[str]):
            if node in path:
                cycle = " -> ".join(path + [node])
                raise RuntimeError(f"Circular dependency detected: {cycle}")
            if node in visited:
                return
            for dep in graph.get(node, []):
                visit(dep, path + [node])
            visited.add(node)
            order.append(node)

        for service_name in graph:
            visit(service_name, [])
        return order

    def warmup(self, services: Optional[List[str]] = None) -> None:
        """Instantiate singletons ahead of first use, in dependency order"""
        if services is None:
            services = [
                name for name, desc in self._descriptors.items()
                if desc.lifecycle == ServiceLifecycle.SINGLETON
            ]
        for name in self.get_initialization_order():
            if name in services:
                logger.info(f"Warming up service: {name}")
                self.get(name)


def create_enhanced_registry() -> ServiceRegistryEnhanced:
    return ServiceRegistryEnhanced()
