import inspect
import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from page_pilot.llm.views import ToolSpec

logger = logging.getLogger(__name__)

# 'host' actions run directly against tabs and navigation; 'page' actions go through
# page dispatch (hard timeout, transient retry); 'terminal' actions are handled by the agent loop.
ActionScope = Literal['host', 'page', 'terminal']

SECTION_ORDER = ('Navigation', 'Tab Management', 'Element Interaction', 'Dropdowns', 'Content', 'Completion')


def _clean_schema(schema: Any) -> Any:
    """Strip pydantic's titles and collapse ``Optional[X]`` to ``X`` for tool schemas."""
    if isinstance(schema, dict):
        any_of = schema.get('anyOf')
        if isinstance(any_of, list):
            non_null = [s for s in any_of if s.get('type') != 'null']
            if len(non_null) == 1:
                merged = {k: v for k, v in schema.items() if k != 'anyOf'}
                merged.update(non_null[0])
                schema = merged
        return {k: _clean_schema(v) for k, v in schema.items() if k != 'title'}
    if isinstance(schema, list):
        return [_clean_schema(item) for item in schema]
    return schema


class RegisteredAction(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    function: Callable
    param_model: type[BaseModel]
    scope: ActionScope = 'host'
    section: str = 'Navigation'

    def tool_spec(self) -> ToolSpec:
        schema = _clean_schema(self.param_model.model_json_schema())
        schema.setdefault('properties', {})
        schema.setdefault('required', [])
        schema['type'] = 'object'
        return ToolSpec(name=self.name, description=self.description, input_schema=schema)


class ActionRegistry(BaseModel):
    actions: dict[str, RegisteredAction] = Field(default_factory=dict)


class Registry:
    """Action catalogue: the tools offered to the model and the functions behind them."""

    def __init__(self, exclude_actions: list[str] | None = None):
        self.registry = ActionRegistry()
        self.exclude_actions = list(exclude_actions or [])

    def action(
        self,
        description: str,
        param_model: type[BaseModel],
        scope: ActionScope = 'host',
        section: str = 'Navigation',
        name: str | None = None,
    ):
        """Decorator registering an async function as a tool."""

        def decorator(func: Callable):
            action_name = name or func.__name__
            if action_name in self.exclude_actions:
                return func
            self.registry.actions[action_name] = RegisteredAction(
                name=action_name,
                description=description,
                function=func,
                param_model=param_model,
                scope=scope,
                section=section,
            )
            return func

        return decorator

    def get(self, name: str) -> RegisteredAction | None:
        return self.registry.actions.get(name)

    def tool_specs(self) -> list[ToolSpec]:
        return [action.tool_spec() for action in self._ordered()]

    def describe_tools(self) -> str:
        """Tool list grouped by section, as rendered in the system prompt."""
        lines: list[str] = []
        for section in SECTION_ORDER:
            actions = [a for a in self.registry.actions.values() if a.section == section]
            if not actions:
                continue
            lines.append(f'{section}:')
            lines.extend(f'- {a.name}: {a.description}' for a in actions)
            lines.append('')
        return '\n'.join(lines).strip()

    def _ordered(self) -> list[RegisteredAction]:
        rank = {section: i for i, section in enumerate(SECTION_ORDER)}
        return sorted(self.registry.actions.values(), key=lambda a: rank.get(a.section, len(rank)))

    async def execute_action(self, action_name: str, params: BaseModel, **context: Any) -> Any:
        """Call the action, passing only the context values its signature asks for."""
        action = self.get(action_name)
        if action is None:
            raise ValueError(f'Action {action_name} not found')
        accepted = inspect.signature(action.function).parameters
        kwargs = {key: value for key, value in context.items() if key in accepted}
        return await action.function(params=params, **kwargs)
