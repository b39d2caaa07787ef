"""扩展模块管道。

启动时发现内置模块与模块目录下的 ``*.py`` 文件（只扫描顶层，只扫描一次），
按声明的依赖做拓扑排序，然后按顺序把每个事件分发给所有模块。
任何一个模块抛出的异常都只记录日志，不会影响其他模块或宿主。
"""

import importlib.util
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Type, TypeVar, Union

from chat_core.domain.models import ChatMessage
from chat_core.domain.platform import (
    CommandOption,
    IncomingMessage,
    InteractionEvent,
    MessageCommandEvent,
    ReactionEvent,
)
from chat_core.domain.state import ConversationState
from chat_core.infrastructure.logging.logger import logger
from chat_core.modules.base import CommandContribution, FeatureModule, ModuleContext

T = TypeVar("T")

ModuleSource = Union[FeatureModule, Type[FeatureModule]]


def _instantiate(cls: Type[FeatureModule], context: ModuleContext) -> FeatureModule:
    """构造函数接受参数时传入 ModuleContext，否则无参构造。"""
    params = [
        p for p in inspect.signature(cls.__init__).parameters.values()
        if p.name != "self" and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    return cls(context) if params else cls()


def _module_classes(namespace: Any) -> List[Type[FeatureModule]]:
    found: List[Type[FeatureModule]] = []
    for _, obj in inspect.getmembers(namespace, inspect.isclass):
        if obj is FeatureModule or not issubclass(obj, FeatureModule):
            continue
        if inspect.isabstract(obj) or obj.__module__ != namespace.__name__:
            continue
        found.append(obj)
    return found


def discover_modules(
    context: ModuleContext,
    modules_path: Optional[str],
    builtins: Iterable[ModuleSource] = (),
) -> List[FeatureModule]:
    modules: List[FeatureModule] = []
    classes: List[Type[FeatureModule]] = []

    for item in builtins:
        if isinstance(item, FeatureModule):
            modules.append(item)
        else:
            classes.append(item)

    if modules_path and modules_path.strip():
        directory = Path(modules_path)
        if directory.is_dir():
            for file in sorted(directory.glob("*.py")):
                if file.name.startswith("_"):
                    continue
                try:
                    spec = importlib.util.spec_from_file_location(f"chat_modules.{file.stem}", file)
                    if spec is None or spec.loader is None:
                        raise ImportError(f"cannot load {file}")
                    module = importlib.util.module_from_spec(spec)
                    spec.loader.exec_module(module)
                except Exception as e:
                    logger.error(
                        f"Failed to load module file {file}: {type(e).__name__} - {e}",
                        extra={"extra": {"path": str(file)}},
                    )
                    continue
                classes.extend(_module_classes(module))
        else:
            logger.warning(f"Module directory not found: {modules_path}")

    for cls in classes:
        try:
            modules.append(_instantiate(cls, context))
        except Exception as e:
            logger.error(f"Failed to create module {cls.__qualname__}: {type(e).__name__} - {e}")
    return modules


def order_modules(modules: Iterable[FeatureModule]) -> List[FeatureModule]:
    """依赖优先的拓扑序。

    空 id 跳过；id 重复（大小写不敏感）保留先出现的；
    依赖缺失、依赖无效或处于环上的模块被排除。
    """
    by_id: Dict[str, FeatureModule] = {}
    for module in modules:
        module_id = (module.id or "").strip()
        if not module_id:
            logger.warning(f"Skipping module with empty id: {type(module).__qualname__}")
            continue
        key = module_id.lower()
        if key in by_id:
            logger.warning(f"Duplicate module id '{module_id}' found. Skipping {type(module).__qualname__}.")
            continue
        by_id[key] = module

    ordered: List[FeatureModule] = []
    visiting: Set[str] = set()
    visited: Set[str] = set()
    invalid: Set[str] = set()

    def visit(key: str) -> None:
        if key in invalid or key in visited:
            return
        module = by_id.get(key)
        if module is None:
            return
        if key in visiting:
            logger.warning(f"Detected module dependency cycle at '{module.id}'. Skipping module.")
            invalid.add(key)
            return
        visiting.add(key)

        for dependency in module.depends_on or ():
            if not dependency or not dependency.strip():
                continue
            dep_key = dependency.strip().lower()
            if dep_key not in by_id:
                logger.warning(f"Module '{module.id}' depends on missing module '{dependency}'. Skipping.")
                invalid.add(key)
                visiting.discard(key)
                return
            visit(dep_key)
            if dep_key in invalid:
                invalid.add(key)
                visiting.discard(key)
                return

        visiting.discard(key)
        visited.add(key)
        if key not in invalid:
            ordered.append(module)

    for key in list(by_id):
        visit(key)
    return ordered


def merge_command_contributions(
    options: List[CommandOption], contributions: Sequence[CommandContribution]
) -> List[CommandOption]:
    """把模块贡献合并进核心命令树；同名冲突时保留先出现的。"""
    top_level: Dict[str, CommandOption] = {o.name.lower(): o for o in options}
    for contribution in contributions:
        option = contribution.option if contribution else None
        if option is None or not option.name or not option.name.strip():
            continue
        if not contribution.target_option or not contribution.target_option.strip():
            if option.name.lower() in top_level:
                logger.warning(f"Command option conflict: '{option.name}' already exists. Skipping module option.")
                continue
            options.append(option)
            top_level[option.name.lower()] = option
            continue

        target = top_level.get(contribution.target_option.lower())
        if target is None:
            logger.warning(
                f"Command option target '{contribution.target_option}' not found. "
                f"Skipping module option '{option.name}'."
            )
            continue
        if target.find(option.name) is not None:
            logger.warning(
                f"Command option conflict: '{contribution.target_option} {option.name}' already exists. "
                "Skipping module option."
            )
            continue
        target.options.append(option)
    return options


class ModulePipeline:
    def __init__(self, context: ModuleContext, modules: Sequence[FeatureModule]):
        self._context = context
        self._modules = list(modules)

    @classmethod
    def create(
        cls,
        context: ModuleContext,
        modules_path: Optional[str] = None,
        builtins: Iterable[ModuleSource] = (),
    ) -> "ModulePipeline":
        ordered = order_modules(discover_modules(context, modules_path, builtins))
        logger.info(
            "Loaded modules",
            extra={"extra": {"modules": [m.id for m in ordered]}},
        )
        return cls(context, ordered)

    @property
    def modules(self) -> List[FeatureModule]:
        return list(self._modules)

    @property
    def context(self) -> ModuleContext:
        return self._context

    async def _safe(self, module: FeatureModule, call: Callable[[], Awaitable[T]], fallback: T) -> T:
        try:
            return await call()
        except Exception as e:
            logger.error(
                f"Module {module.id} failed: {type(e).__name__} - {e}",
                extra={"extra": {"module_id": module.id}},
            )
            return fallback

    async def initialize(self) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.initialize(self._context), None)

    async def on_ready(self) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.on_ready(self._context), None)

    async def on_message_received(self, message: IncomingMessage) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.on_message_received(self._context, message), None)

    async def on_message_updated(self, message: IncomingMessage) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.on_message_updated(self._context, message), None)

    async def on_reaction_added(self, reaction: ReactionEvent) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.on_reaction_added(self._context, reaction), None)

    async def on_interaction(self, interaction: InteractionEvent) -> bool:
        handled = False
        for m in self._modules:
            result = await self._safe(m, lambda m=m: m.on_interaction(self._context, interaction), False)
            handled = handled or bool(result)
        return handled

    async def on_message_command_executed(self, command: MessageCommandEvent) -> None:
        for m in self._modules:
            await self._safe(m, lambda m=m: m.on_message_command_executed(self._context, command), None)

    async def get_additional_message_context(
        self, message: IncomingMessage, state: ConversationState
    ) -> List[ChatMessage]:
        combined: List[ChatMessage] = []
        for m in self._modules:
            messages = await self._safe(
                m, lambda m=m: m.get_additional_message_context(self._context, message, state), []
            )
            if messages:
                combined.extend(messages)
        return combined

    def get_command_contributions(self) -> List[CommandContribution]:
        contributions: List[CommandContribution] = []
        for m in self._modules:
            try:
                contributed = m.get_command_contributions(self._context)
            except Exception as e:
                logger.error(
                    f"Module {m.id} failed to provide command contributions: {type(e).__name__} - {e}",
                    extra={"extra": {"module_id": m.id}},
                )
                continue
            if contributed:
                contributions.extend(contributed)
        return contributions
