from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from Thickness.artifacts import ArtifactStore
from Thickness.config import RunConfig, TemplateConfig
from Thickness.layout import SubjectLayout, TemplateLayout
from Thickness.tools import ToolRequest, ToolRunner


@dataclass
class StageContext:
    """Everything a stage function needs for one subject/side.

    Configuration objects are shared read-only; the store and the runner are the
    only things a stage uses to touch the filesystem or external programs.
    """

    run: RunConfig
    template: TemplateConfig
    templates: TemplateLayout
    layout: SubjectLayout
    store: ArtifactStore
    runner: ToolRunner
    log_path: Optional[Path] = None

    @property
    def side(self) -> str:
        return self.layout.side

    @property
    def subject_id(self) -> str:
        return self.layout.subject_id

    @property
    def idside(self) -> str:
        return self.layout.idside

    def log(self, tag: str, message: str) -> None:
        print(f"[{tag}] {message}")
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as handle:
                handle.write(f"{datetime.now().isoformat(timespec='seconds')} [{tag}] {message}\n")

    def scratch(self, name: str) -> Path:
        self.layout.tmp_dir.mkdir(parents=True, exist_ok=True)
        return self.layout.tmp_dir / name

    def tool_step(self, outputs: Sequence[Path], build: Callable[[List[Path]], ToolRequest]) -> List[Path]:
        """Memoized external call: ``build`` receives the temporary output paths."""
        return self.store.ensure_many(outputs, lambda tmps: self.runner.run(build(tmps)))
