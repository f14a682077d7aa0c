# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Report Generator for VM Connect Diagnostics

Builds the JSON document returned by the command and optionally saved to disk.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import (
    DiagnosticResult,
    FixAction,
    FixEffectivenessReport,
    FixResult,
    PreventiveCheckResult,
)
from .suggestion_generator import FixSuggestion


class ReportGenerator:  # pylint: disable=too-many-instance-attributes
    """Generates the diagnostic report"""

    def __init__(
        self,
        instance_id: str,
        subscription: Optional[str],
        *,
        check_result: PreventiveCheckResult,
        fix_actions: List[FixAction],
        fix_results: Optional[List[FixResult]] = None,
        effectiveness: Optional[FixEffectivenessReport] = None,
        suggestions: Optional[List[FixSuggestion]] = None,
        unclassified: Optional[List[DiagnosticResult]] = None,
        dry_run: bool = False,
        script_version: str = "0.1.0",
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the ReportGenerator

        Args:
            instance_id: VM identifier
            subscription: Azure subscription ID
            check_result: Preventive check outcome
            fix_actions: Proposed fix actions, safest first
            fix_results: Results of executed or skipped fix actions
            effectiveness: Post-remediation verification report
            suggestions: Detailed fix suggestions
            unclassified: Problem findings with no fix rule
            dry_run: Whether fixes ran in dry-run mode
            script_version: Extension version
            logger: Optional logger instance
        """
        self.instance_id = instance_id
        self.subscription = subscription
        self.check_result = check_result
        self.fix_actions = fix_actions
        self.fix_results = fix_results or []
        self.effectiveness = effectiveness
        self.suggestions = suggestions or []
        self.unclassified = unclassified or []
        self.dry_run = dry_run
        self.script_version = script_version
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.report")

    def generate_json_report(self) -> Dict[str, Any]:
        """
        Generate JSON report data

        Returns:
            Dictionary containing complete report data
        """
        report = {
            "metadata": {
                "vm": self.instance_id,
                "subscription": self.subscription,
                "generated": datetime.now(timezone.utc).isoformat(),
                "version": self.script_version,
                "dry_run": self.dry_run,
            },
            "preventive_check": self.check_result.to_dict(),
            "fix_actions": [a.to_dict() for a in self.fix_actions],
            "fix_results": [r.to_dict() for r in self.fix_results],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "unclassified_findings": [r.to_dict() for r in self.unclassified],
        }
        if self.effectiveness is not None:
            report["fix_effectiveness"] = self.effectiveness.to_dict()
        return report

    def save_json_report(
        self,
        filepath: str,
        file_permissions: int = 0o600
    ) -> bool:
        """
        Save JSON report to file

        Args:
            filepath: Path to save the JSON report
            file_permissions: File permissions (default: owner read/write only)

        Returns:
            True if successful, False otherwise
        """
        try:
            report_data = self.generate_json_report()

            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(report_data, f, indent=2)

            # Set secure file permissions
            os.chmod(filepath, file_permissions)
            self.logger.warning("JSON report saved to: %s", filepath)
            return True

        except OSError as e:
            self.logger.error("Failed to save JSON report: %s", e)
            return False
