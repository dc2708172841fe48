"""
Integrity Verifier Module

Checks the destination content tree against the scanned file manifest after
a migration, so missing or truncated files show up in the report.
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import PathViolation
from models import FileManifest, FileManifestEntry
from transfer.path_safety import resolve_safe_path


class IntegrityVerifier:
    """Existence and size verification of transferred files."""

    def __init__(self, config: Dict[str, Any], content_root: str, logger: Any):
        """Initialize the IntegrityVerifier.

        Args:
            config: Configuration dictionary
            content_root: Destination root the manifest paths are relative to
            logger: Logger instance
        """
        self.config = config
        self.content_root = content_root
        self.logger = logger

        integrity_config = config.get('advanced', {}).get('integrity_verification', {})

        self.enabled = integrity_config.get('enabled', False)
        self.save_report = integrity_config.get('save_report', False)
        self.report_path = integrity_config.get('report_path', './integrity-report.json')
        self.max_listed_issues = integrity_config.get('max_listed_issues', 100)

    def verify_manifest(self, manifest: FileManifest,
                        skip_paths: Optional[List[str]] = None) -> Dict[str, Any]:
        """Compare every manifest entry against the destination tree.

        Args:
            manifest: Manifest fetched from the source
            skip_paths: Paths the operator already knows failed (reported separately)

        Returns:
            Verification report dictionary
        """
        self.logger.info(f"Starting integrity verification of {manifest.total_count} files")
        start_time = time.time()
        skipped = set(skip_paths or [])

        results = {
            'enabled': True,
            'timestamp': time.time(),
            'files_checked': 0,
            'files_ok': 0,
            'missing': [],
            'size_mismatch': [],
            'unsafe': [],
            'known_failures': sorted(skipped),
        }

        for entry in manifest.files:
            if entry.path in skipped:
                continue
            results['files_checked'] += 1
            self._check_entry(entry, results)

        results['duration'] = time.time() - start_time
        results['summary'] = self._summarize(results)

        if self.save_report:
            self._save_report_to_file(results)

        return results

    def _check_entry(self, entry: FileManifestEntry, results: Dict[str, Any]) -> None:
        try:
            full_path = Path(resolve_safe_path(self.content_root, entry.path))
        except PathViolation as e:
            results['unsafe'].append({'path': entry.path, 'reason': e.details.get('reason')})
            return

        if not full_path.is_file():
            results['missing'].append(entry.path)
            return

        actual = full_path.stat().st_size
        if actual != entry.size:
            results['size_mismatch'].append({'path': entry.path, 'expected': entry.size, 'actual': actual})
            return

        results['files_ok'] += 1

    def _summarize(self, results: Dict[str, Any]) -> Dict[str, Any]:
        total_issues = len(results['missing']) + len(results['size_mismatch']) + len(results['unsafe'])
        checked = results['files_checked']
        score = results['files_ok'] / checked if checked else 1.0

        issues = []
        if results['missing']:
            issues.append(f"{len(results['missing'])} files missing at destination")
        if results['size_mismatch']:
            issues.append(f"{len(results['size_mismatch'])} files with unexpected size")
        if results['unsafe']:
            issues.append(f"{len(results['unsafe'])} manifest paths rejected as unsafe")

        if total_issues:
            self.logger.warning(f"Integrity verification found {total_issues} issues (score {score:.1%})")
            for path in results['missing'][:self.max_listed_issues]:
                self.logger.debug(f"Missing: {path}")
        else:
            self.logger.info(f"Integrity verification passed for {checked} files")

        return {
            'integrity_score': score,
            'total_issues': total_issues,
            'issues': issues,
        }

    def _save_report_to_file(self, report: Dict[str, Any]) -> None:
        """Save verification report to the configured JSON path."""
        directory = os.path.dirname(os.path.abspath(self.report_path))
        os.makedirs(directory, exist_ok=True)
        with open(self.report_path, 'w', encoding='utf-8') as f:
            json.dump(report, f, indent=2, default=str)
        self.logger.info(f"Integrity report saved to {self.report_path}")


__all__ = ['IntegrityVerifier']
