"""
Execution Context Management
Scoped variables, secrets and tracing identifiers for a single flow run
"""

import copy
import os
import re
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from config.settings import Settings, settings as default_settings
from ..interfaces import SecretStore
from .exceptions import ContextNotFoundError, ExpressionError, FlowEngineError
from .expressions import CONTEXT_FUNCTIONS, ExpressionEvaluator
from .models import Flow, VariableDefinition, VariableType

logger = structlog.get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")


def generate_correlation_id() -> str:
    return f"corr_{uuid.uuid4()}"


def generate_trace_id() -> str:
    return f"trace_{int(time.time() * 1000)}_{uuid.uuid4().hex[:16]}"


@dataclass
class ExecutionContext:
    """Per-run state handed to every node invocation"""

    execution_id: str
    flow_id: str
    flow_name: str = ""
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Variable name -> value, with the kind each variable was declared as
    variables: Dict[str, Any] = field(default_factory=dict)
    variable_types: Dict[str, VariableType] = field(default_factory=dict)
    secrets: Dict[str, Any] = field(default_factory=dict, repr=False)

    # Environment snapshot
    environment: str = "development"
    env: Dict[str, Any] = field(default_factory=dict)

    # Tracing
    correlation_id: str = field(default_factory=generate_correlation_id)
    trace_id: str = field(default_factory=generate_trace_id)
    parent_execution_id: Optional[str] = None

    # Budgets
    retry_count: int = 0
    max_retries: int = 3
    timeout_ms: int = 300000

    def execution_info(self) -> Dict[str, Any]:
        """Execution metadata visible to expressions and interpolation"""
        return {
            "id": self.execution_id,
            "flow_id": self.flow_id,
            "flow_name": self.flow_name,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "trace_id": self.trace_id,
            "environment": self.environment,
        }

    def log_context(self) -> Dict[str, Any]:
        """Identifiers safe to bind to log events"""
        return {
            "execution_id": self.execution_id,
            "flow_id": self.flow_id,
            "correlation_id": self.correlation_id,
            "trace_id": self.trace_id,
        }


class ExecutionContextManager:
    """
    Creates and tracks execution contexts

    Features:
    - Static, dynamic (restricted expression) and secret variables
    - Environment allow-list snapshot plus execution identifiers
    - ${name} interpolation over variables, secrets and namespaces
    - Child contexts sharing a trace id with their parent
    """

    def __init__(
        self,
        secret_store: Optional[SecretStore] = None,
        settings: Optional[Settings] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        environ: Optional[Mapping[str, str]] = None
    ):
        self.secret_store = secret_store
        self.settings = settings or default_settings
        self.evaluator = evaluator or ExpressionEvaluator()
        self.environ = environ if environ is not None else os.environ
        self._contexts: Dict[str, ExecutionContext] = {}

    async def create(
        self,
        execution_id: str,
        flow: Flow,
        user_overrides: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        """
        Create and register the context for a run.

        Args:
            execution_id: Run identifier
            flow: Flow being executed
            user_overrides: Extra metadata; a ``variables`` mapping sets static variables

        Returns:
            The registered ExecutionContext
        """
        overrides = dict(user_overrides or {})
        override_variables = overrides.pop("variables", None) or {}

        context = ExecutionContext(
            execution_id=execution_id,
            flow_id=flow.id,
            flow_name=flow.name,
            user_id=overrides.pop("user_id", None) or flow.created_by or self.settings.DEFAULT_USER_ID,
            metadata={**flow.metadata, **overrides},
            environment=self.settings.ENVIRONMENT,
            max_retries=self.settings.MAX_EXECUTION_RETRIES,
            timeout_ms=self.settings.EXECUTION_TIMEOUT_MS,
        )

        self._load_environment(context)
        await self._load_flow_variables(context, flow)
        self._load_secrets(context, flow)

        for name, value in override_variables.items():
            context.variables[name] = value
            context.variable_types[name] = VariableType.STATIC

        self._contexts[execution_id] = context

        logger.debug(
            "execution_context_created",
            execution_id=execution_id,
            flow_id=flow.id,
            correlation_id=context.correlation_id,
            trace_id=context.trace_id,
            variable_count=len(context.variables),
            secret_count=len(context.secrets)
        )

        return context

    def get_context(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get(execution_id)

    def require_context(self, execution_id: str) -> ExecutionContext:
        context = self._contexts.get(execution_id)
        if context is None:
            raise ContextNotFoundError(
                "Execution context not found",
                execution_id=execution_id
            )
        return context

    def update_context(self, execution_id: str, **updates: Any) -> ExecutionContext:
        """Replace context fields; unknown field names raise ValueError"""
        context = self.require_context(execution_id)
        known = {f.name for f in fields(ExecutionContext)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown context fields: {', '.join(sorted(unknown))}")

        for name, value in updates.items():
            setattr(context, name, value)

        logger.debug(
            "execution_context_updated",
            execution_id=execution_id,
            updated_fields=sorted(updates)
        )
        return context

    def set_variable(
        self,
        execution_id: str,
        name: str,
        value: Any,
        variable_type: VariableType = VariableType.STATIC
    ) -> None:
        context = self.require_context(execution_id)
        context.variables[name] = value
        context.variable_types[name] = variable_type

        logger.debug(
            "execution_variable_set",
            execution_id=execution_id,
            variable_name=name,
            value_type=type(value).__name__
        )

    def get_variable(self, execution_id: str, name: str, default: Any = None) -> Any:
        context = self.require_context(execution_id)
        return context.variables.get(name, default)

    def interpolate(self, execution_id: str, template: str) -> str:
        """
        Replace ${name} placeholders in a template.

        Lookup order is variables, then secrets, then the ``env.``,
        ``metadata.`` and ``execution.`` namespaces. Placeholders that do
        not resolve are left as they are.
        """
        context = self.require_context(execution_id)
        unresolved = []

        def substitute(match: "re.Match[str]") -> str:
            name = match.group(1).strip()
            found, value = self._resolve_placeholder(context, name)
            if not found:
                unresolved.append(name)
                return match.group(0)
            return str(value)

        result = PLACEHOLDER_PATTERN.sub(substitute, template)

        if unresolved:
            logger.debug(
                "interpolation_placeholders_unresolved",
                execution_id=execution_id,
                placeholders=unresolved
            )
        return result

    async def create_child(
        self,
        parent_execution_id: str,
        child_execution_id: str,
        overrides: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        """
        Derive a context for a nested run.

        Variables, secrets and metadata are copied, a new correlation id is
        assigned, the trace id is kept and the retry count starts over.
        Overrides are applied last.
        """
        parent = self._contexts.get(parent_execution_id)
        if parent is None:
            raise ContextNotFoundError(
                "Parent execution context not found",
                execution_id=parent_execution_id
            )

        child = replace(
            parent,
            execution_id=child_execution_id,
            parent_execution_id=parent_execution_id,
            correlation_id=generate_correlation_id(),
            trace_id=parent.trace_id,
            variables=copy.deepcopy(parent.variables),
            variable_types=dict(parent.variable_types),
            secrets=copy.deepcopy(parent.secrets),
            metadata=copy.deepcopy(parent.metadata),
            env=dict(parent.env),
            retry_count=0,
        )
        if overrides:
            child = replace(child, **overrides)

        self._contexts[child_execution_id] = child

        logger.debug(
            "child_execution_context_created",
            parent_execution_id=parent_execution_id,
            child_execution_id=child_execution_id,
            correlation_id=child.correlation_id
        )
        return child

    def cleanup(self, execution_id: str) -> None:
        """Wipe secrets and drop the context from the registry"""
        context = self._contexts.pop(execution_id, None)
        if context is not None:
            context.secrets.clear()
            logger.debug("execution_context_cleaned_up", execution_id=execution_id)

    @property
    def active_contexts(self) -> int:
        return len(self._contexts)

    # Loading helpers

    def _load_environment(self, context: ExecutionContext) -> None:
        for name in self.settings.CONTEXT_ENV_ALLOWLIST:
            value = self.environ.get(name)
            if value is not None:
                context.env[name] = value

        context.env["EXECUTION_ID"] = context.execution_id
        context.env["FLOW_ID"] = context.flow_id
        context.env["CORRELATION_ID"] = context.correlation_id
        context.env["TRACE_ID"] = context.trace_id
        context.env["TIMESTAMP"] = context.timestamp.isoformat()

    async def _load_flow_variables(self, context: ExecutionContext, flow: Flow) -> None:
        for variable in flow.variables:
            try:
                if variable.type == VariableType.STATIC:
                    context.variables[variable.name] = variable.value
                elif variable.type == VariableType.DYNAMIC:
                    context.variables[variable.name] = self._evaluate_dynamic(variable, context)
                elif variable.type == VariableType.SECRET:
                    if variable.secret_config is None:
                        logger.warning(
                            "secret_variable_missing_config",
                            execution_id=context.execution_id,
                            variable_name=variable.name
                        )
                        continue
                    context.secrets[variable.name] = await self._resolve_secret(variable)
                context.variable_types[variable.name] = variable.type

            except FlowEngineError as e:
                logger.error(
                    "flow_variable_load_failed",
                    execution_id=context.execution_id,
                    variable_name=variable.name,
                    variable_type=variable.type.value,
                    error_type=type(e).__name__
                )

    def _load_secrets(self, context: ExecutionContext, flow: Flow) -> None:
        for secret in flow.secrets:
            context.secrets[secret.name] = secret.value
            logger.debug(
                "flow_secret_loaded",
                execution_id=context.execution_id,
                secret_name=secret.name
            )

    def _evaluate_dynamic(self, variable: VariableDefinition, context: ExecutionContext) -> Any:
        if not variable.expression:
            return None

        names = {
            "execution": {
                "id": context.execution_id,
                "flow_id": context.flow_id,
                "timestamp": context.timestamp.isoformat(),
                "environment": context.environment,
            },
            "env": dict(context.env),
        }
        try:
            return self.evaluator.evaluate(variable.expression, names, CONTEXT_FUNCTIONS)
        except ExpressionError as e:
            logger.error(
                "dynamic_variable_evaluation_failed",
                execution_id=context.execution_id,
                variable_name=variable.name,
                error=e.message
            )
            return None

    async def _resolve_secret(self, variable: VariableDefinition) -> Any:
        secret_config = variable.secret_config
        if self.secret_store is None:
            raise FlowEngineError(f"No secret store configured for variable {variable.name}")
        return await self.secret_store.resolve(
            secret_config.type.value,
            secret_config.key,
            **secret_config.options
        )

    @staticmethod
    def _resolve_placeholder(context: ExecutionContext, name: str) -> Tuple[bool, Any]:
        if name in context.variables:
            return True, context.variables[name]
        if name in context.secrets:
            return True, context.secrets[name]

        namespace, _, path = name.partition(".")
        if not path:
            return False, None

        if namespace == "env":
            source: Any = context.env
        elif namespace == "metadata":
            source = context.metadata
        elif namespace == "execution":
            source = context.execution_info()
        else:
            return False, None

        for part in path.split("."):
            if isinstance(source, Mapping) and part in source:
                source = source[part]
            else:
                return False, None
        if source is None:
            return False, None
        return True, source
