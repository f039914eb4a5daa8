#!/usr/bin/env python3
"""
Kinematic simulation of several differential-drive agents

Each agent integrates its last commanded (v, w) into a pose in one thread
and publishes that pose from another, at independent rates. No wheels or
hardware are modelled.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import numpy as np

from .states import OdometryRecord, Pose, TransformRecord
from .utils import LoopRate


def namespaced_frame(agent_name: str, frame_id: str) -> str:
    """Prefix a frame with the agent name: ('robot1', '/odom') -> 'robot1/odom'"""
    return f"{agent_name}/{frame_id.lstrip('/')}"


def parse_initial_pose(text: str) -> Tuple[float, float, float]:
    """Parse an "x y theta" string"""
    values = np.asarray(str(text).split(), dtype=float)
    if values.size != 3:
        raise ValueError(f"Initial pose must be 'x y theta', got '{text}'")
    return float(values[0]), float(values[1]), float(values[2])


class KinematicSimAgent:
    """
    One simulated robot

    Locks: vw_lock guards the commanded velocity, pose_lock the pose.
    When both are needed pose_lock is taken first.
    """

    def __init__(
        self,
        name: str,
        x: float = 0.0,
        y: float = 0.0,
        theta: float = 0.0,
        freq: float = 50.0,
        publish_freq: float = 10.0,
        base_frame_id: str = 'base_link',
        odom_frame_id: str = 'odom',
        odometry_publisher: Optional[Callable[[OdometryRecord], None]] = None,
        transform_publisher: Optional[Callable[[TransformRecord], None]] = None,
        pose_publisher: Optional[Callable[[OdometryRecord], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        stamp_clock: Callable[[], float] = time.time,
        logger=None
    ):
        self.name = name
        self.freq = freq
        self.publish_freq = publish_freq
        self.base_frame_id = namespaced_frame(name, base_frame_id)
        self.odom_frame_id = namespaced_frame(name, odom_frame_id)
        self.odometry_publisher = odometry_publisher
        self.transform_publisher = transform_publisher
        self.pose_publisher = pose_publisher
        self.clock = clock
        self.stamp_clock = stamp_clock
        self.logger = logger or logging.getLogger(__name__)

        self.vw_lock = threading.Lock()
        self.pose_lock = threading.Lock()

        self.pose = Pose(x, y, theta)
        self.v = 0.0
        self.w = 0.0
        self.last_t = self.clock()

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # --- Inputs ---

    def on_velocity_command(self, v: float, w: float):
        self.logger.debug(f"[{self.name}] Received velocity command: {v} {w}")
        with self.vw_lock:
            self.v = v
            self.w = w

    def on_initial_pose(self, x: float, y: float, theta: float):
        """Overwrite the pose, bypassing integration"""
        self.logger.debug(f"[{self.name}] Received initial pose: {x}, {y}, {theta}")
        with self.pose_lock:
            self.pose.reset(x, y, theta)

    # --- Integration ---

    def integrate_once(self):
        """Integrate the current (v, w) over the time since the last call"""
        now = self.clock()
        dt = now - self.last_t
        self.last_t = now

        with self.vw_lock:
            v, w = self.v, self.w

        with self.pose_lock:
            self._sanitize('before integration', v, w)
            if not self.pose.integrate(v, w, dt):
                self.logger.warning(
                    f"[{self.name}] Skipping integration after {dt:.2f}s stall"
                )
            self._sanitize('after integration', v, w)

    def publish_once(self) -> OdometryRecord:
        with self.pose_lock:
            self._sanitize('before publishing', self.v, self.w)
            pose = self.pose.copy()
            with self.vw_lock:
                v, w = self.v, self.w

        odom = OdometryRecord(
            stamp=self.stamp_clock(),
            frame_id=self.odom_frame_id,
            child_frame_id=self.base_frame_id,
            x=pose.x,
            y=pose.y,
            theta=pose.theta,
            linear_velocity=v,
            angular_velocity=w,
        )
        if self.odometry_publisher is not None:
            self.odometry_publisher(odom)
        if self.transform_publisher is not None:
            self.transform_publisher(TransformRecord.from_odometry(odom))
        if self.pose_publisher is not None:
            self.pose_publisher(odom)
        return odom

    def get_pose(self) -> Pose:
        with self.pose_lock:
            return self.pose.copy()

    def _sanitize(self, where: str, v: float, w: float):
        # Assumes pose_lock is held
        reset = self.pose.sanitize()
        if reset:
            self.logger.error(
                f"[{self.name}] Non-finite {', '.join(reset)} {where} (v={v}, w={w})"
            )

    # --- Threads ---

    def spin_integration(self):
        rate = LoopRate(self.freq, self._stop_event, self.clock)
        while not self._stop_event.is_set():
            self.integrate_once()
            rate.sleep()

    def spin_publish(self):
        rate = LoopRate(self.publish_freq, self._stop_event, self.clock)
        while not self._stop_event.is_set():
            self.publish_once()
            rate.sleep()

    def start(self):
        if self._threads:
            return
        self._stop_event.clear()
        self.last_t = self.clock()
        self._threads = [
            threading.Thread(target=self.spin_integration,
                             name=f'{self.name}-integrate', daemon=True),
            threading.Thread(target=self.spin_publish,
                             name=f'{self.name}-publish', daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self):
        self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)


class MultiAgentSimulationManager:
    """
    Owns a set of named simulated agents and the lifetime of their threads
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._agents: Dict[str, KinematicSimAgent] = {}

    @classmethod
    def from_parameters(
        cls,
        params: Mapping,
        publishers_for: Optional[Callable[[str], Dict[str, Callable]]] = None,
        logger=None,
        **agent_options
    ) -> 'MultiAgentSimulationManager':
        """
        Build agents from ``num_agents``, ``agent<i>`` and ``initial<i>``

        Args:
            params (Mapping): Parameter values; ``agent<i>`` defaults to its
                own key, ``initial<i>`` to "0.0 0.0 0.0"
            publishers_for (Callable): Agent name -> publisher keyword arguments
            **agent_options: Passed to every KinematicSimAgent
        """
        manager = cls(logger=logger)
        num_agents = int(params.get('num_agents', 0))
        for i in range(num_agents):
            name_key = f'agent{i}'
            name = params.get(name_key, name_key)
            initial = params.get(f'initial{i}', '0.0 0.0 0.0')
            x, y, theta = parse_initial_pose(initial)

            manager.logger.info(f"Adding agent: [{name}] @ {x}, {y}, {theta} ({initial})")

            options = dict(agent_options)
            if publishers_for is not None:
                options.update(publishers_for(name))
            manager.add_agent(KinematicSimAgent(name, x, y, theta, logger=logger, **options))
        return manager

    def add_agent(self, agent: KinematicSimAgent) -> KinematicSimAgent:
        if agent.name in self._agents:
            raise ValueError(f"Agent '{agent.name}' already exists")
        self._agents[agent.name] = agent
        return agent

    def get(self, name: str) -> Optional[KinematicSimAgent]:
        return self._agents.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._agents)

    def start(self):
        for agent in self._agents.values():
            agent.start()

    def stop(self):
        for agent in self._agents.values():
            agent.stop()

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[KinematicSimAgent]:
        return iter(list(self._agents.values()))
