"""扩展模块：模块契约、管道与内置模块。"""

from .base import CommandContribution, FeatureModule, ModuleContext

__all__ = ["CommandContribution", "FeatureModule", "ModuleContext"]
