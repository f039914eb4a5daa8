"""
Scarab Drive Package

ROS 2 package driving a differential-drive robot through a RoboClaw motor
controller, with wheel odometry and a multi-agent kinematic simulator.
"""

__version__ = "1.0.0"
