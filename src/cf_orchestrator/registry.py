"""
Stack registry
Ordered, read-only catalogue of the stacks that make up an environment
"""
from typing import Dict, Iterable, List

from .exceptions import RegistryError, UnknownScope, UnknownStackKey
from .models import StackDefinition

FOUNDATION_SCOPE = 'foundation'

DEFAULT_NAME_TEMPLATE = '{project}-{environment}-{key}'
DEFAULT_PARAMETER_SOURCE = 'cloudformation/parameters/{parameter_set}.json'

# FSx and RDS can take tens of minutes to create or delete
STATEFUL_TIMEOUT_SECONDS = 5400


class StackRegistry:
    """
    Ordered list of stack definitions

    Registry order is the deployment order: a stack may only depend on
    stacks that appear before it.
    """

    def __init__(self, definitions: Iterable[StackDefinition]):
        self._definitions = tuple(definitions)
        self._by_key: Dict[str, StackDefinition] = {}
        self._validate()

    def _validate(self) -> None:
        for position, definition in enumerate(self._definitions):
            if definition.key in self._by_key:
                raise RegistryError(f"Duplicate stack key: {definition.key}")

            for dependency in definition.depends_on:
                if dependency not in self._by_key:
                    raise RegistryError(
                        f"Stack {definition.key} (position {position}) depends on {dependency}, "
                        f"which must appear earlier in the registry"
                    )

            self._by_key[definition.key] = definition

    def list(self, scope: str = FOUNDATION_SCOPE) -> List[StackDefinition]:
        """Stacks in the given scope, in dependency order"""
        stacks = [definition for definition in self._definitions if scope in definition.scopes]
        if not stacks:
            raise UnknownScope(scope)
        return stacks

    def reverse(self, scope: str = FOUNDATION_SCOPE) -> List[StackDefinition]:
        """Stacks in the given scope, in teardown order"""
        return list(reversed(self.list(scope)))

    def keys(self, scope: str = FOUNDATION_SCOPE) -> List[str]:
        return [definition.key for definition in self.list(scope)]

    def resolve(self, key: str) -> StackDefinition:
        try:
            return self._by_key[key]
        except KeyError:
            raise UnknownStackKey(key, known=[definition.key for definition in self._definitions])

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self):
        return iter(self._definitions)


def _foundation_stack(key: str, description: str, **kwargs) -> StackDefinition:
    return StackDefinition(
        key=key,
        name_template=DEFAULT_NAME_TEMPLATE,
        template_ref=f'cloudformation/cf-{key}.yaml',
        parameter_source_ref=DEFAULT_PARAMETER_SOURCE,
        scopes=(FOUNDATION_SCOPE,),
        description=description,
        **kwargs,
    )


FOUNDATION_STACKS = (
    _foundation_stack('vpc', 'VPC, subnets, NAT gateways and security groups'),
    _foundation_stack('iam', 'IAM roles and instance profiles', depends_on=('vpc',)),
    _foundation_stack(
        'storage', 'FSx file system and S3 buckets',
        stateful=True, depends_on=('vpc',), timeout_seconds=STATEFUL_TIMEOUT_SECONDS,
    ),
    _foundation_stack(
        'database', 'RDS PostgreSQL instance',
        stateful=True, depends_on=('vpc', 'iam'), timeout_seconds=STATEFUL_TIMEOUT_SECONDS,
    ),
    _foundation_stack('cache', 'ElastiCache Redis cluster', depends_on=('vpc',)),
)


def default_registry() -> StackRegistry:
    """Registry of the foundation stacks: vpc, iam, storage, database, cache"""
    return StackRegistry(FOUNDATION_STACKS)
