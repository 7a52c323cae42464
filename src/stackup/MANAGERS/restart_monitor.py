# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Background supervision of a foreground deployment: exits are fed to the restart policy.
"""
import logging
import threading
from typing import Callable, Dict, Optional

from ..errors import StackupError
from ..MODELS.running_instance import InstanceState
from .service_orchestrator import ServiceOrchestrator

logger = logging.getLogger(__name__)


class RestartMonitor:
    """
    Periodically reconciles the orchestrator's instances with the runtime.
    """

    def __init__(
        self,
        orchestrator: ServiceOrchestrator,
        interval: float = 1.0,
        on_failure: Optional[Callable[[str], None]] = None,
    ):
        """
        Initializes the restart monitor.

        :param orchestrator: The orchestrator owning the instances.
        :param interval: Seconds between reconciliations.
        :param on_failure: Callback when a service ends up failed for good.
        """
        self.orchestrator = orchestrator
        self.interval = interval
        self.on_failure = on_failure
        self._stop = threading.Event()
        self._reported = set()
        self.thread: Optional[threading.Thread] = None

    def start(self):
        """
        Starts the monitoring thread.
        """
        self._stop.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="stackup-restart-monitor", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the monitoring thread.
        """
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=self.interval + 1)
            self.thread = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def check_once(self) -> Dict[str, InstanceState]:
        """
        Runs a single reconciliation and reports newly failed services.
        """
        states = self.orchestrator.poll_instances()
        for name, state in states.items():
            if state == InstanceState.FAILED and name not in self._reported:
                self._reported.add(name)
                if self.on_failure:
                    self.on_failure(name)
        return states

    def _monitor_loop(self):
        while not self._stop.is_set():
            try:
                self.check_once()
            except StackupError as e:
                logger.error("Supervision error: %s", e)
            self._stop.wait(self.interval)
