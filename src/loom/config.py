# config.py
"""
Workflow loading: `.loom.yml` text -> list of Job.

    name: CI
    on: [push]
    jobs:
      build:
        runs-on: node-18
        steps:
          - name: Install
            run: npm ci
      test:
        needs: [build]
        steps:
          - run: npm test
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Union

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationError
from .model import DEFAULT_RUNS_ON, Job, Step


# -------------------- Schemas --------------------

class StepSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    run: Optional[str] = None

    @model_validator(mode="after")
    def _name_or_run(self) -> "StepSpec":
        if not (self.run or "").strip():
            if not (self.name or "").strip():
                raise ValueError("step must have a 'name' and a 'run' command")
            raise ValueError(f"step '{self.name}' has no 'run' command")
        if not (self.name or "").strip():
            # Default the display name to the command's first line
            self.name = self.run.strip().splitlines()[0]
        return self


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    runs_on: str = Field(default=DEFAULT_RUNS_ON, alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, v):
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v


class WorkflowSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = "workflow"
    on: Union[List[str], str, Dict[str, object], None] = None
    jobs: Dict[str, JobSpec] = Field(min_length=1)


# -------------------- Loading --------------------

def _format_errors(err: pydantic.ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        msg = e["msg"].removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def _offending_job(err: pydantic.ValidationError) -> Optional[str]:
    for e in err.errors():
        loc = e["loc"]
        if len(loc) >= 2 and loc[0] == "jobs":
            return str(loc[1])
    return None


def parse_workflow(text: str) -> WorkflowSpec:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError("Workflow must be a mapping with a 'jobs' key")

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        return WorkflowSpec.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Validation failed: {_format_errors(e)}", job=_offending_job(e)) from e


def to_jobs(workflow: WorkflowSpec) -> List[Job]:
    return [
        Job(
            name=name,
            steps=[Step(name=s.name, run=s.run) for s in spec.steps],
            needs=list(spec.needs),
            runs_on=spec.runs_on or DEFAULT_RUNS_ON,
            env=dict(spec.env),
        )
        for name, spec in workflow.jobs.items()
    ]


def parse_jobs(text: str) -> List[Job]:
    return to_jobs(parse_workflow(text))


def load_file(path: str | Path) -> List[Job]:
    """
    Load jobs from a workflow file.

    Raises:
      FileNotFoundError: the file does not exist
      ValidationError: the content is not a valid workflow
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    try:
        text = wf_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"Workflow is not valid UTF-8: {e}") from e
    return parse_jobs(text)
