#!/usr/bin/env python3
"""
RoboClaw Differential Drive Node

ROS 2 node driving a two-wheeled robot through a RoboClaw controller.
Subscribes to velocity commands, publishes wheel odometry, TF and the raw
motor state.
"""

import rclpy
from rclpy.node import Node
from rclpy.qos import QoSProfile, ReliabilityPolicy, HistoryPolicy
from rclpy.executors import MultiThreadedExecutor
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.time import Time
from rcl_interfaces.msg import SetParametersResult

import yaml

# ROS messages
from nav_msgs.msg import Odometry
from geometry_msgs.msg import TransformStamped, Twist
from std_msgs.msg import String
from std_srvs.srv import Empty
import tf2_ros

# Local imports
from .control_loop import ControlLoopScheduler
from .motor_driver import MotorSpeedController
from .states import MotorState, OdometryRecord, TransformRecord
from .tuning import MotorTuningParameters, load_tuning_file


def stamp_to_msg(stamp: float):
    return Time(nanoseconds=int(stamp * 1e9)).to_msg()


class RoboClawNode(Node):
    """
    ROS 2 node for RoboClaw velocity control and wheel odometry
    """

    def __init__(self):
        super().__init__('roboclaw_node')

        self._declare_parameters()
        self._get_parameters()

        # QoS profiles
        odom_qos = QoSProfile(
            reliability=ReliabilityPolicy.RELIABLE,
            history=HistoryPolicy.KEEP_LAST,
            depth=100
        )

        # Publishers
        self.odom_pub = self.create_publisher(Odometry, 'odom', odom_qos)
        self.state_pub = self.create_publisher(String, 'motor_state', 5)
        self.tf_broadcaster = tf2_ros.TransformBroadcaster(self)

        # Blocks until the controller answers
        self.driver = MotorSpeedController(
            self.tuning,
            portname=self.portname,
            address=self.address,
            baudrate=self.baudrate,
            state_publisher=self.publish_motor_state,
            logger=self.get_logger(),
            is_alive=rclpy.ok
        )
        self.driver.connect()

        self.scheduler = ControlLoopScheduler(
            self.driver,
            frequency=self.tuning.freq,
            odom_frame=self.odom_frame,
            base_frame=self.base_frame,
            odometry_publisher=self.publish_odometry,
            transform_publisher=self.publish_transform,
            stamp_clock=lambda: self.get_clock().now().nanoseconds / 1e9,
            logger=self.get_logger()
        )

        # Subscriptions and services
        callback_group = ReentrantCallbackGroup()
        self.cmd_vel_sub = self.create_subscription(
            Twist,
            'cmd_vel',
            self.cmd_vel_callback,
            1,
            callback_group=callback_group
        )
        self.reset_srv = self.create_service(
            Empty,
            '~/reset_odometry',
            self.reset_odometry_callback,
            callback_group=callback_group
        )

        self.add_on_set_parameters_callback(self.parameters_callback)

        self.scheduler.start()

        self.get_logger().info("RoboClaw node started")
        self.get_logger().info(f"Port: {self.portname} (address 0x{self.address:02X})")
        self.get_logger().info(f"Axle width: {self.tuning.axle_width:.3f}m")
        self.get_logger().info(f"Wheel diameter: {self.tuning.wheel_diam:.3f}m")
        self.get_logger().info(f"Loop rate: {self.tuning.freq:.1f}Hz")

    def _declare_parameters(self):
        """Declare all ROS parameters with default values"""
        for name, value in MotorTuningParameters().to_dict().items():
            self.declare_parameter(name, value)

        # Serial link
        self.declare_parameter('portname', '/dev/roboclaw')
        self.declare_parameter('address', 0x80)
        self.declare_parameter('baudrate', 115200)

        # Frames
        self.declare_parameter('odom_frame', 'odom')
        self.declare_parameter('base_frame', 'base')

        # Optional YAML file with tuning overrides
        self.declare_parameter('config_file', '')

    def _get_parameters(self):
        """Get all parameters from ROS parameter server"""
        self.tuning = MotorTuningParameters().with_updates({
            name: self.get_parameter(name).value
            for name in MotorTuningParameters.field_names()
        })

        self.config_file = self.get_parameter('config_file').value
        if self.config_file:
            try:
                self.tuning = load_tuning_file(self.config_file, base=self.tuning)
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.get_logger().fatal(f"Cannot load config file {self.config_file}: {e}")
                raise

        problems = self.tuning.validate()
        if problems:
            self.get_logger().fatal(f"Invalid tuning: {'; '.join(problems)}")
            raise ValueError('; '.join(problems))

        self.portname = self.get_parameter('portname').value
        self.address = self.get_parameter('address').value
        self.baudrate = self.get_parameter('baudrate').value
        self.odom_frame = self.get_parameter('odom_frame').value
        self.base_frame = self.get_parameter('base_frame').value

    def parameters_callback(self, params):
        """Apply reconfigured tuning, frames and loop rate"""
        values = {param.name: param.value for param in params}
        try:
            tuning = self.driver.tuning.with_updates(values)
        except (TypeError, ValueError) as e:
            return SetParametersResult(successful=False, reason=str(e))

        problems = tuning.validate()
        if problems:
            return SetParametersResult(successful=False, reason='; '.join(problems))

        self.scheduler.reconfigure(
            tuning,
            odom_frame=values.get('odom_frame'),
            base_frame=values.get('base_frame')
        )
        return SetParametersResult(successful=True)

    def cmd_vel_callback(self, msg: Twist):
        """Thread safe way of setting velocity"""
        self.scheduler.on_velocity_command(msg.linear.x, msg.angular.z)

    def publish_motor_state(self, state: MotorState):
        """Publish the motor state as a YAML document"""
        msg = String()
        msg.data = yaml.dump(state.to_dict())
        self.state_pub.publish(msg)

    def publish_odometry(self, record: OdometryRecord):
        """Publish odometry message"""
        odom_msg = Odometry()

        # Header
        odom_msg.header.stamp = stamp_to_msg(record.stamp)
        odom_msg.header.frame_id = record.frame_id
        odom_msg.child_frame_id = record.child_frame_id

        # Position
        odom_msg.pose.pose.position.x = record.x
        odom_msg.pose.pose.position.y = record.y
        odom_msg.pose.pose.position.z = 0.0

        # Orientation
        qx, qy, qz, qw = record.orientation
        odom_msg.pose.pose.orientation.x = qx
        odom_msg.pose.pose.orientation.y = qy
        odom_msg.pose.pose.orientation.z = qz
        odom_msg.pose.pose.orientation.w = qw

        # Velocities
        odom_msg.twist.twist.linear.x = record.linear_velocity
        odom_msg.twist.twist.angular.z = record.angular_velocity

        self.odom_pub.publish(odom_msg)

    def publish_transform(self, record: TransformRecord):
        """Publish TF transform"""
        t = TransformStamped()
        t.header.stamp = stamp_to_msg(record.stamp)
        t.header.frame_id = record.parent_frame
        t.child_frame_id = record.child_frame

        t.transform.translation.x, t.transform.translation.y, t.transform.translation.z = \
            record.translation
        qx, qy, qz, qw = record.rotation
        t.transform.rotation.x = qx
        t.transform.rotation.y = qy
        t.transform.rotation.z = qz
        t.transform.rotation.w = qw

        self.tf_broadcaster.sendTransform(t)

    def reset_odometry_callback(self, request, response):
        """Service callback to reset odometry"""
        self.scheduler.reset_odometry()
        self.get_logger().info("Odometry reset to origin")
        return response

    def destroy_node(self):
        """Stop the loop and the motors before the node goes away"""
        self.get_logger().info("Shutting down RoboClaw node...")
        self.scheduler.stop()
        self.driver.shutdown()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)

    executor = MultiThreadedExecutor()

    node = RoboClawNode()
    executor.add_node(node)

    try:
        executor.spin()
    except KeyboardInterrupt:
        pass
    finally:
        node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
