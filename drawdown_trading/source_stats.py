# drawdown_trading/source_stats.py
"""
Price Source Statistics

Tracks per-source reliability across cycles:
- Success / error counts
- Last and average response time
- Last error message
- Success rate of the most recent run
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .models import PriceSample
from .utils import load_json_file, save_json_file, utc_now

logger = logging.getLogger(__name__)

# Weight of the newest response time in the running average
RESPONSE_TIME_EMA_WEIGHT = 0.1


class SourceStatistics:
    """Persisted reliability counters for the price sources."""

    def __init__(self, stats_file: str):
        self.stats_file = stats_file
        self.data = self._load()

    def _load(self) -> Dict[str, Any]:
        data = load_json_file(self.stats_file, default=None)
        if not data:
            return self._create_empty()
        return data

    def _create_empty(self) -> Dict[str, Any]:
        return {
            'total_executions': 0,
            'global_success_rate': 0.0,
            'last_successful_sources': 0,
            'last_total_sources': 0,
            'sources': {},
            'last_update': None
        }

    def record(self, samples: Sequence[PriceSample], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Fold one cycle's samples into the counters and save.

        Save failures are logged, never raised.
        """
        timestamp = (now or utc_now()).isoformat()
        sources = self.data.setdefault('sources', {})

        for sample in samples:
            entry = sources.setdefault(sample.source, {
                'total': 0,
                'success': 0,
                'errors': 0,
                'avg_response_time': None
            })
            entry['total'] += 1
            entry['last_used'] = timestamp

            if sample.success:
                entry['success'] += 1
                entry['last_success'] = timestamp
                entry['last_response_time'] = round(sample.latency_seconds, 3)
                previous = entry.get('avg_response_time')
                if previous is None:
                    entry['avg_response_time'] = round(sample.latency_seconds, 3)
                else:
                    entry['avg_response_time'] = round(
                        previous + (sample.latency_seconds - previous) * RESPONSE_TIME_EMA_WEIGHT, 3
                    )
            else:
                entry['errors'] += 1
                entry['last_error'] = sample.error

        successful = sum(1 for s in samples if s.success)
        total = len(samples)

        self.data['total_executions'] = self.data.get('total_executions', 0) + 1
        self.data['last_successful_sources'] = successful
        self.data['last_total_sources'] = total
        self.data['global_success_rate'] = round(successful / total * 100, 1) if total else 0.0
        self.data['last_update'] = timestamp

        if save_json_file(self.stats_file, self.data):
            logger.info(
                f"✅ Source statistics updated: {successful}/{total} sources "
                f"({self.data['global_success_rate']:.1f}%)"
            )
        else:
            logger.error("❌ Failed to save source statistics")

        return self.data

    def get_summary(self) -> Dict[str, Any]:
        """Per-source success rates plus the last run's totals."""
        per_source: List[Dict[str, Any]] = []
        for name, entry in sorted(self.data.get('sources', {}).items()):
            total = entry.get('total', 0)
            per_source.append({
                'source': name,
                'success_rate_pct': round(entry.get('success', 0) / total * 100, 1) if total else 0.0,
                'total': total,
                'errors': entry.get('errors', 0),
                'avg_response_time': entry.get('avg_response_time'),
                'last_error': entry.get('last_error')
            })

        return {
            'total_executions': self.data.get('total_executions', 0),
            'global_success_rate': self.data.get('global_success_rate', 0.0),
            'last_successful_sources': self.data.get('last_successful_sources', 0),
            'last_total_sources': self.data.get('last_total_sources', 0),
            'last_update': self.data.get('last_update'),
            'sources': per_source
        }
