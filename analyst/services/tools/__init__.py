"""Tools the agent can call, and the default registry."""

from analyst.services.tools.analysis_code import ExecuteAnalysisCodeTool
from analyst.services.tools.base import Tool, ToolContext
from analyst.services.tools.calculation import PerformCalculationTool
from analyst.services.tools.clarification import AskUserClarificationTool
from analyst.services.tools.dataset_sample import FetchDatasetSampleTool
from analyst.services.tools.registry import ToolRegistry
from analyst.services.tools.report_code import GenerateReportCodeTool


def build_default_registry() -> ToolRegistry:
    return ToolRegistry([
        FetchDatasetSampleTool(),
        ExecuteAnalysisCodeTool(),
        GenerateReportCodeTool(),
        PerformCalculationTool(),
        AskUserClarificationTool(),
    ])


__all__ = [
    "AskUserClarificationTool",
    "ExecuteAnalysisCodeTool",
    "FetchDatasetSampleTool",
    "GenerateReportCodeTool",
    "PerformCalculationTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "build_default_registry",
]
