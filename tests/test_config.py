from __future__ import annotations

import copy
from pathlib import Path

import pytest
import yaml

import Thickness

from Thickness.config import (
    MembershipConfig,
    RunConfig,
    TemplateConfig,
    ToolConfig,
    default_threads,
    load_template_config,
    load_tool_config,
)
from Thickness.errors import ConfigurationError

from conftest import TEMPLATE_CONFIG


def test_template_config_parses_regions_and_defaults() -> None:
    cfg = TemplateConfig.from_dict(copy.deepcopy(TEMPLATE_CONFIG))
    assert cfg.fit_names == ("BKG", "CA", "ERC", "PHC")
    assert cfg.kinds == cfg.fit_names
    assert cfg.fit_labels[2].merge == (10, 15)
    assert cfg.similarity_map == ((3, 2),)
    assert cfg.cs_split.anterior == (10,)
    assert cfg.thickness.pruning == 1.2
    assert cfg.membership == MembershipConfig()


def test_kinds_must_cover_every_fit_label() -> None:
    data = copy.deepcopy(TEMPLATE_CONFIG)
    data["regions"]["kinds"] = ["BKG", "CA"]
    with pytest.raises(ConfigurationError, match="kinds"):
        TemplateConfig.from_dict(data)


def test_report_fit_quality_needs_known_regions() -> None:
    data = copy.deepcopy(TEMPLATE_CONFIG)
    data["report"]["fit_quality"] = ["CA", "ERC", "Everything"]
    with pytest.raises(ConfigurationError):
        TemplateConfig.from_dict(data)


def test_membership_external_arguments_string_is_split() -> None:
    cfg = MembershipConfig.from_dict({"external": True, "arguments": "/opt/mcr/v95 --verbose", "neighbours": 4})
    assert cfg.external is True
    assert cfg.arguments == ("/opt/mcr/v95", "--verbose")
    assert cfg.neighbours == 4
    with pytest.raises(ConfigurationError):
        MembershipConfig.from_dict({"neighbours": 0})


def test_missing_template_config_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="completeness"):
        load_template_config(tmp_path)


def test_tool_config_lookup_order(tmp_path: Path) -> None:
    (tmp_path / "greedy").write_text("#!/bin/sh\n", encoding="utf-8")
    config = tmp_path / "pipeline.yaml"
    config.write_text(
        yaml.safe_dump({"tools": {"bin_dir": str(tmp_path), "executables": {"lmshoot": "/opt/cmrep/lmshoot"}}}),
        encoding="utf-8",
    )
    tools = load_tool_config(config)
    assert tools.executable("lmshoot") == "/opt/cmrep/lmshoot"
    assert tools.executable("greedy") == str(tmp_path / "greedy")


def test_missing_tool_raises(monkeypatch) -> None:
    monkeypatch.setattr("Thickness.config.shutil.which", lambda name: None)
    with pytest.raises(ConfigurationError, match="mesh2img"):
        ToolConfig().executable("mesh2img")


def test_default_threads_prefers_job_allocation(monkeypatch) -> None:
    monkeypatch.setenv("LSB_DJOB_NUMPROC", "3")
    assert default_threads() == 3
    monkeypatch.setenv("LSB_DJOB_NUMPROC", "lots")
    assert default_threads() >= 1


def test_package_exports_resolve_lazily() -> None:
    assert Thickness.RunConfig is RunConfig
    assert Thickness.ThicknessRunner.__name__ == "ThicknessRunner"
    with pytest.raises(AttributeError):
        Thickness.NoSuchThing
