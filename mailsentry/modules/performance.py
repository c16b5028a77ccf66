"""
Performance Monitor Module

Per-invocation timing and memory figures, written to the filter log once
the message reaches its disposition.
"""

import datetime
import logging
from typing import Callable, Dict

import psutil

logger = logging.getLogger(__name__)


class PerformanceMonitor:
    """Track phase timings and memory usage for one message"""

    def __init__(self):
        self.metrics = {
            'start_time': datetime.datetime.now(),
            'phase_times': {},
            'memory_usage': {},
            'email_size': 0,
            'source': None,
            'action': None,
            'final_score': 0,
        }
        self.record_memory('start')

    def record_phase(self, phase: str):
        """Record time at which a processing phase finished"""
        self.metrics['phase_times'][phase] = datetime.datetime.now()

    def record_memory(self, phase: str):
        try:
            process = psutil.Process()
            self.metrics['memory_usage'][phase] = process.memory_info().rss / 1024 / 1024  # MB
        except psutil.Error as e:
            logger.debug(f"Memory sample failed at {phase}: {e}")

    def record_email_size(self, size: int):
        self.metrics['email_size'] = size

    def record_result(self, source: str, action: str, score: int):
        self.metrics['source'] = source
        self.metrics['action'] = action
        self.metrics['final_score'] = score

    def phase_durations(self) -> Dict[str, float]:
        """Seconds spent in each phase, measured from the previous one"""
        durations = {}
        previous = self.metrics['start_time']
        for phase, moment in self.metrics['phase_times'].items():
            durations[phase] = (moment - previous).total_seconds()
            previous = moment
        return durations

    def log_performance(self, log_func: Callable[[str], None] = logger.info):
        """Log performance summary"""
        total_time = (datetime.datetime.now() - self.metrics['start_time']).total_seconds()
        self.record_memory('end')

        phases = ', '.join(f"{name}={seconds:.3f}s" for name, seconds in self.phase_durations().items())
        log_func(f"Performance: {total_time:.2f}s total ({phases or 'no phases'})")
        log_func(f"Message: {self.metrics['email_size']} bytes, source={self.metrics['source']}, "
                 f"action={self.metrics['action']}, score={self.metrics['final_score']}")

        mem_start = self.metrics['memory_usage'].get('start', 0)
        mem_end = self.metrics['memory_usage'].get('end', 0)
        log_func(f"Memory: {mem_start:.1f}MB -> {mem_end:.1f}MB")
