from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import re
import shutil
import time
from typing import Callable, Dict, List, Optional, Tuple

from tqdm import tqdm

from Thickness.artifacts import ArtifactStore
from Thickness.config import RunConfig, TemplateConfig, ToolConfig, load_template_config
from Thickness.context import StageContext
from Thickness.errors import ConfigurationError, MissingPrerequisiteError, StageFailure, ThicknessError
from Thickness.evaluation import post_steps
from Thickness.layout import UNIFIED, VARIANT, SubjectLayout, TemplateLayout
from Thickness.registration import reg_to_unified, reg_to_variant
from Thickness.selection import GroupAssignment, membership, reg_to_atlases
from Thickness.shooting import shoot_unified, shoot_variant
from Thickness.tools import ToolRunner


@dataclass(frozen=True)
class Stage:
    number: int
    name: str
    description: str
    run: Callable[[StageContext], None]


STAGES: Tuple[Stage, ...] = (
    Stage(1, "reg_to_atlases", "Perform affine and coarse deformable registration between subject segmentation to all the atlases.", reg_to_atlases),
    Stage(2, "membership", "Determine group membership.", membership),
    Stage(3, "reg_to_variant", "Perform deformable registration to the selected variant template.", reg_to_variant),
    Stage(4, "shoot_variant", "Perform geodesic shooting to the variant template (VT).", shoot_variant),
    Stage(5, "post_variant", "Evaluate quality of fit and measure thickness for VT.", post_steps),
    Stage(6, "reg_to_unified", "Perform deformable registration to the unified template.", reg_to_unified),
    Stage(7, "shoot_unified", "Perform geodesic shooting to the unified template (UT).", shoot_unified),
    Stage(8, "post_unified", "Evaluate quality of fit and measure thickness for UT.", post_steps),
)

DEFAULT_STAGES: Tuple[int, int] = (1, 5)

PREREQUISITES: Dict[int, Tuple[int, ...]] = {
    1: (),
    2: (1,),
    3: (1, 2),
    4: (1, 3),
    5: (2, 4),
    6: (1, 2),
    7: (1, 6),
    8: (2, 7),
}

_STAGE_SPEC = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")


def parse_stage_spec(spec: Optional[str]) -> Tuple[int, int]:
    """``"3"`` or ``"2-6"`` to an inclusive stage range clamped into [1, 8]; None means the default."""
    if spec is None or str(spec).strip() == "":
        return DEFAULT_STAGES
    match = _STAGE_SPEC.match(str(spec))
    if not match:
        raise ConfigurationError(f"Stage spec must be N or N-M, got {spec!r}")
    last = len(STAGES)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) is not None else start
    start = min(max(start, 1), last)
    end = min(max(end, start), last)
    return start, end


def stage_products(stage: int, layout: SubjectLayout, templates: TemplateLayout) -> List[Path]:
    """Artifacts whose presence shows that ``stage`` completed for this subject/side."""
    if stage == 1:
        return [layout.divided_seg, layout.seg_orig, layout.seg, layout.mlaffine]
    if stage == 2:
        return [layout.assignment_file(VARIANT), layout.assignment_file(UNIFIED)]
    if stage in (3, 6):
        return [layout.final_chain(VARIANT if stage == 3 else UNIFIED)]
    if stage in (4, 7):
        kind = VARIANT if stage == 4 else UNIFIED
        try:
            group = GroupAssignment.load(layout.assignment_file(kind)).group
        except MissingPrerequisiteError:
            return [layout.shoot_dir(kind) / "shooting_momenta.vtk"]
        return [layout.fitted_seg(templates.target(kind, group))]
    return []


def validate_prerequisites(layout: SubjectLayout, templates: TemplateLayout, start: int, end: int) -> None:
    """Fail before any work when a stage in range depends on an earlier stage that never ran."""
    for number in range(start, end + 1):
        for needed in PREREQUISITES[number]:
            if needed >= start:
                continue
            missing = [p for p in stage_products(needed, layout, templates) if not p.exists()]
            if missing:
                raise MissingPrerequisiteError(
                    f"stage {number} ({STAGES[number - 1].name}) needs stage {needed} ({STAGES[needed - 1].name})",
                    missing,
                )


class ThicknessRunner:
    """Runs the requested stage range for each side of one subject.

    Sides share only read-only template data, so each side is an independent task
    with its own work directory, artifact store and log.
    """

    def __init__(
        self,
        cfg: RunConfig,
        tools: Optional[ToolConfig] = None,
        template: Optional[TemplateConfig] = None,
        runner_factory: Optional[Callable[[Optional[Path]], ToolRunner]] = None,
    ) -> None:
        self.cfg = cfg
        self.tools = tools or ToolConfig.from_dict(None)
        self.template = template or load_template_config(cfg.template_dir)
        self.templates = TemplateLayout(cfg.template_dir)
        self.runner_factory = runner_factory or (lambda log_path: ToolRunner(self.tools, cfg.threads, log_path))
        self._check_template()

    def _check_template(self) -> None:
        atlases = self.templates.atlases
        if self.cfg.stage_start <= 2 <= self.cfg.stage_end and not self.template.membership.external:
            groups = self.templates.atlas_groups
            print(f"[config] {len(atlases)} atlases in {len(set(groups))} groups")

    @property
    def stages(self) -> List[Stage]:
        return list(STAGES[self.cfg.stage_start - 1 : self.cfg.stage_end])

    def context(self, side: str) -> StageContext:
        layout = SubjectLayout(self.cfg.work_dir_for(side), self.cfg.subject_id, side)
        layout.tmp_dir.mkdir(parents=True, exist_ok=True)
        log_path = layout.dump_dir / f"thickness_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        return StageContext(
            run=self.cfg,
            template=self.template,
            templates=self.templates,
            layout=layout,
            store=ArtifactStore(),
            runner=self.runner_factory(log_path),
            log_path=log_path,
        )

    def run_side(self, side: str) -> StageContext:
        ctx = self.context(side)
        validate_prerequisites(ctx.layout, self.templates, self.cfg.stage_start, self.cfg.stage_end)
        ctx.log("run", f"{ctx.idside}: stages {self.cfg.stage_start}-{self.cfg.stage_end}, {self.cfg.threads} thread(s)")
        side_start = time.monotonic()
        for stage in self.stages:
            ctx.log(f"stage {stage.number}", f"Starting stage {stage.number}: {stage.description}")
            stage_start = time.monotonic()
            try:
                stage.run(ctx)
            except ThicknessError:
                raise
            except Exception as exc:
                raise StageFailure(f"stage {stage.number} ({stage.name}) for {ctx.idside}", exc) from exc
            ctx.log(
                f"stage {stage.number}",
                f"{side} hemisphere stage {stage.number} completed in {time.monotonic() - stage_start:.0f} seconds",
            )
        ctx.log(
            "run",
            f"{ctx.idside} done in {time.monotonic() - side_start:.0f} seconds "
            f"({len(ctx.store.produced)} artifacts produced, {len(ctx.store.hits)} reused)",
        )
        if self.cfg.tidy:
            print(f"[tidy] Removing {ctx.layout.work_dir}")
            shutil.rmtree(ctx.layout.work_dir, ignore_errors=True)
        return ctx

    def run(self) -> None:
        failures: List[Tuple[str, ThicknessError]] = []
        for side in tqdm(self.cfg.sides, desc="sides"):
            try:
                self.run_side(side)
            except ThicknessError as exc:
                print(f"[error] {side}: {exc}")
                failures.append((side, exc))
            except Exception as exc:
                failure = StageFailure(f"{side} hemisphere", exc)
                print(f"[error] {side}: {failure}")
                failures.append((side, failure))
        if failures:
            self.cfg.work_dir.mkdir(parents=True, exist_ok=True)
            report = self.cfg.work_dir / "pipeline_error.txt"
            report.write_text("".join(f"{side}: {exc}\n" for side, exc in failures), encoding="utf-8")
            raise failures[0][1]

    def remove_scratch(self) -> None:
        """Drop each side's scratch directory; finished artifacts stay for a later resume."""
        if self.cfg.debug:
            print("[cleanup] --debug set, leaving scratch directories in place")
            return
        for side in self.cfg.sides:
            tmp = SubjectLayout(self.cfg.work_dir_for(side), self.cfg.subject_id, side).tmp_dir
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)
                print(f"[cleanup] Removed {tmp}")
