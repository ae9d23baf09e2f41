"""Cortical thickness of the medial temporal lobe from ASHS segmentations.

`RunConfig` and `ThicknessRunner` are resolved on first access, so importing a
single helper module such as `Thickness.chains` does not load every stage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from Thickness.config import RunConfig as RunConfig
    from Thickness.pipeline import ThicknessRunner as ThicknessRunner

__all__ = ["RunConfig", "ThicknessRunner"]


def __getattr__(name: str) -> Any:
    if name == "RunConfig":
        from Thickness.config import RunConfig as _RunConfig

        return _RunConfig
    if name == "ThicknessRunner":
        from Thickness.pipeline import ThicknessRunner as _ThicknessRunner

        return _ThicknessRunner
    raise AttributeError(name)
