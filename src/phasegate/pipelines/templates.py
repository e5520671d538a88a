"""Built-in pipeline templates rendered by ``phasegate template NAME``."""

from __future__ import annotations

from typing import Final

from phasegate.domain.errors import PipelineDefinitionError
from phasegate.domain.models import Pipeline
from phasegate.pipelines.loader import parse_pipeline_text

_COMMIT: Final[str] = """\
version: 1
name: commit
kind: commit
description: Local changes to a pushed, quality-gated branch.
phases:
  - name: prepare
    gate: strict_all
    checks:
      - id: clean-index
        run: git diff --cached --quiet --exit-code
        allowed_exit_codes: [0, 1]
        description: Staged changes are readable.
      - id: branch-named
        run: git symbolic-ref --short HEAD
  - name: commit
    gate: strict_all
    checks:
      - id: lint
        run: ruff check .
      - id: format
        run: ruff format --check .
        required: false
  - name: push
    gate:
      policy: weighted_threshold
      threshold: 0.5
    checks:
      - id: unit-tests
        run: pytest -q
        timeout_seconds: 900
        weight: 1.0
      - id: type-check
        run: mypy src
        weight: 0.5
        required: true
      - id: docs-build
        run: make docs
        required: false
"""

_RELEASE: Final[str] = """\
version: 1
name: release
kind: release
description: Tagged, deployed release with a verified rollback path.
deployment:
  snapshot: ./scripts/deploy-snapshot.sh
  revert: ./scripts/deploy-revert.sh
  timeout_seconds: 600
phases:
  - name: build
    checks:
      - id: build
        run: make build
        timeout_seconds: 1200
  - name: test
    checks:
      - id: unit-tests
        run: pytest -q
        timeout_seconds: 1800
      - id: changelog
        run: git diff --quiet HEAD -- CHANGELOG.md
        required: false
  - name: deploy
    deployment_boundary: true
    checks:
      - id: release-tag
        run: git describe --exact-match --tags HEAD
      - id: deploy
        run: make deploy
        timeout_seconds: 1800
  - name: verify
    checks:
      - id: health
        http:
          url: http://localhost:8080/health
          expected_status: [200]
        retries: 2
rollback_checks:
  - id: health-after-rollback
    http: http://localhost:8080/health
    retries: 2
"""

_HOTFIX: Final[str] = """\
version: 1
name: hotfix
kind: hotfix
description: Emergency fix; a human may wave through failing checks.
deployment:
  snapshot: ./scripts/deploy-snapshot.sh
  revert: ./scripts/deploy-revert.sh
phases:
  - name: verify
    gate:
      policy: manual_override
      override_timeout_seconds: 600
    checks:
      - id: smoke-tests
        run: pytest -q -m smoke
        timeout_seconds: 600
      - id: lint
        run: ruff check .
        required: false
  - name: deploy
    deployment_boundary: true
    checks:
      - id: deploy
        run: make deploy
        timeout_seconds: 1800
rollback_checks:
  - id: health-after-rollback
    http: http://localhost:8080/health
"""

TEMPLATES: Final[dict[str, str]] = {
    "commit": _COMMIT,
    "release": _RELEASE,
    "hotfix": _HOTFIX,
}


def template_names() -> tuple[str, ...]:
    return tuple(sorted(TEMPLATES))


def render_template(name: str) -> str:
    try:
        return TEMPLATES[name]
    except KeyError:
        raise PipelineDefinitionError(
            f"unknown template {name!r}; available: {', '.join(template_names())}"
        ) from None


def load_template(name: str) -> Pipeline:
    return parse_pipeline_text(render_template(name), source=f"template:{name}")


__all__ = ["TEMPLATES", "load_template", "render_template", "template_names"]
