"""XML result document generation using Jinja2 templates."""

import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from suiterunner.core.model import ResultStatus, Rollup, TestOutcome
from suiterunner.exceptions import ReportError
from suiterunner.report.aggregator import ResultTree

log = structlog.get_logger("suiterunner.report")

TEMPLATE_NAME = "results.xml.j2"

# Characters that may not appear in an XML 1.0 document at all
_INVALID_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def clean_xml_text(value: object) -> str:
    """Drop characters XML cannot represent, even escaped."""
    if value is None:
        return ""
    return _INVALID_XML_CHARS.sub("", str(value))


def format_seconds(value: float) -> str:
    return f"{value:.3f}"


class ReportSerializer:
    """Turns a result tree into the XML result document.

    The transform is pure: the same tree always gives the same document.
    """

    def __init__(self) -> None:
        template_dir = Path(__file__).parent / "templates"
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(["xml", "xml.j2"]),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

        self.env.filters["xml_text"] = clean_xml_text
        self.env.filters["seconds"] = format_seconds

    def serialize(self, tree: ResultTree) -> str:
        """Render the document for ``tree``.

        Args:
            tree: Result tree produced by the aggregator

        Returns:
            The XML document
        """
        stamp = tree.started_at if tree.started_at is not None else tree.finished_at
        moment = datetime.fromtimestamp(stamp or 0, tz=timezone.utc)

        template = self.env.get_template(TEMPLATE_NAME)
        return template.render(
            tree=tree,
            rollup=tree.rollup,
            date=moment.strftime("%Y-%m-%d"),
            time=moment.strftime("%H:%M:%S"),
            failure_statuses=(ResultStatus.FAILURE.value, ResultStatus.ERROR.value),
        )

    def write(self, tree: ResultTree, path: Union[str, Path], document: Optional[str] = None) -> Path:
        """Serialize ``tree`` and write it to ``path``.

        An already rendered ``document`` for the same tree can be passed in.

        Raises:
            ReportError: If the file cannot be written
        """
        path = Path(path)
        if document is None:
            document = self.serialize(tree)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document, encoding="utf-8")
        except OSError as e:
            raise ReportError(f"Cannot write result document to {path}: {e}") from e

        log.info("Wrote result document", path=str(path), tests=tree.rollup.total)
        return path


def parse_report(source: Union[str, Path]) -> ET.Element:
    """Parse a result document from its text or from a file path.

    Raises:
        ReportError: If the document is not well-formed
    """
    try:
        if isinstance(source, Path):
            return ET.parse(source).getroot()
        return ET.fromstring(source.encode("utf-8"))
    except (ET.ParseError, OSError) as e:
        raise ReportError(f"Invalid result document: {e}") from e


def _case_rollup(element: ET.Element) -> Rollup:
    outcome = TestOutcome(
        status=ResultStatus(element.get("result")),
        elapsed=float(element.get("time", "0")),
    )
    return Rollup.of(outcome)


def stored_rollups(document: ET.Element) -> dict[str, Rollup]:
    """Suite rollups as written in the document, keyed by suite name."""
    rollups: dict[str, Rollup] = {}
    for suite in document.iter("test-suite"):
        rollups[suite.get("name")] = Rollup(
            **{key: int(suite.get(key.replace("_", "-"), "0")) for key in Rollup().counts()}
        )
    return rollups


def recompute_rollups(document: ET.Element) -> dict[str, Rollup]:
    """Suite rollups recomputed from the document's ``test-case`` leaves only.

    Elapsed time is left at zero so the result compares equal to
    :func:`stored_rollups`.
    """
    rollups: dict[str, Rollup] = {}
    for suite in document.iter("test-suite"):
        total = Rollup.combine(_case_rollup(case) for case in suite.iter("test-case"))
        rollups[suite.get("name")] = total.model_copy(update={"elapsed": 0.0})
    return rollups
