from .formatting import ReportFormatter
from .fa import build_report_fa
from .gm import build_report_gm
from .label import build_report_label

__all__ = ["ReportFormatter", "build_report_fa", "build_report_gm", "build_report_label"]
