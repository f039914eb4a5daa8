#!/usr/bin/env python3
"""
Kinematic Simulator Node

ROS 2 node simulating any number of differential-drive agents. Each agent
has its own cmd_vel / initialpose inputs and odom / gt_pose / TF outputs
under /<agent name>/.
"""

import rclpy
from rclpy.node import Node
from rclpy.parameter import Parameter
from rclpy.executors import MultiThreadedExecutor
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.time import Time

# ROS messages
from nav_msgs.msg import Odometry
from geometry_msgs.msg import PoseWithCovarianceStamped, TransformStamped, Twist
import tf2_ros

# Local imports
from .kinematic_sim import KinematicSimAgent, MultiAgentSimulationManager
from .states import OdometryRecord, TransformRecord
from .utils import quaternion_to_yaw


def stamp_to_msg(stamp: float):
    return Time(nanoseconds=int(stamp * 1e9)).to_msg()


def odometry_to_msg(record: OdometryRecord) -> Odometry:
    msg = Odometry()
    msg.header.stamp = stamp_to_msg(record.stamp)
    msg.header.frame_id = record.frame_id
    msg.child_frame_id = record.child_frame_id
    msg.pose.pose.position.x = record.x
    msg.pose.pose.position.y = record.y
    (msg.pose.pose.orientation.x, msg.pose.pose.orientation.y,
     msg.pose.pose.orientation.z, msg.pose.pose.orientation.w) = record.orientation
    msg.twist.twist.linear.x = record.linear_velocity
    msg.twist.twist.angular.z = record.angular_velocity
    return msg


class KinematicSimNode(Node):
    """
    ROS 2 node hosting a MultiAgentSimulationManager
    """

    def __init__(self):
        super().__init__(
            'kinematic_sim',
            allow_undeclared_parameters=True,
            automatically_declare_parameters_from_overrides=True
        )

        self.callback_group = ReentrantCallbackGroup()
        self.tf_broadcaster = tf2_ros.TransformBroadcaster(self)
        self._pubs = {}
        self._subs = []

        num_agents = self._param('num_agents', 0)
        params = {'num_agents': num_agents}
        for i in range(num_agents):
            params[f'agent{i}'] = self._param(f'agent{i}', f'agent{i}')
            params[f'initial{i}'] = self._param(f'initial{i}', '0.0 0.0 0.0')

        self.manager = MultiAgentSimulationManager.from_parameters(
            params,
            publishers_for=self._create_publishers,
            logger=self.get_logger(),
            freq=float(self._param('freq', 50.0)),
            publish_freq=float(self._param('publish_freq', 10.0)),
            base_frame_id=self._param('base_frame_id', 'base_link'),
            odom_frame_id=self._param('odom_frame_id', 'odom'),
            stamp_clock=lambda: self.get_clock().now().nanoseconds / 1e9
        )

        for agent in self.manager:
            self._create_subscriptions(agent)

        self.manager.start()
        self.get_logger().info(f"Kinematic simulator started with {len(self.manager)} agents")

    def _param(self, name: str, default):
        return self.get_parameter_or(name, Parameter(name, value=default)).value

    def _create_publishers(self, name: str):
        odom_pub = self.create_publisher(Odometry, f'/{name}/odom', 100)
        gt_pub = self.create_publisher(PoseWithCovarianceStamped, f'/{name}/gt_pose', 100)
        self._pubs[name] = (odom_pub, gt_pub)

        return {
            'odometry_publisher': lambda record: odom_pub.publish(odometry_to_msg(record)),
            'transform_publisher': self.publish_transform,
            'pose_publisher': lambda record: gt_pub.publish(self._gt_pose_msg(record)),
        }

    def _create_subscriptions(self, agent: KinematicSimAgent):
        def on_cmd_vel(msg: Twist):
            agent.on_velocity_command(msg.linear.x, msg.angular.z)

        def on_initial_pose(msg: PoseWithCovarianceStamped):
            q = msg.pose.pose.orientation
            agent.on_initial_pose(
                msg.pose.pose.position.x,
                msg.pose.pose.position.y,
                quaternion_to_yaw(q.x, q.y, q.z, q.w)
            )

        self._subs.append(self.create_subscription(
            Twist, f'/{agent.name}/cmd_vel', on_cmd_vel, 1,
            callback_group=self.callback_group
        ))
        self._subs.append(self.create_subscription(
            PoseWithCovarianceStamped, f'/{agent.name}/initialpose', on_initial_pose, 1,
            callback_group=self.callback_group
        ))

    def _gt_pose_msg(self, record: OdometryRecord) -> PoseWithCovarianceStamped:
        msg = PoseWithCovarianceStamped()
        msg.header.stamp = stamp_to_msg(record.stamp)
        msg.header.frame_id = record.frame_id
        msg.pose.pose.position.x = record.x
        msg.pose.pose.position.y = record.y
        (msg.pose.pose.orientation.x, msg.pose.pose.orientation.y,
         msg.pose.pose.orientation.z, msg.pose.pose.orientation.w) = record.orientation
        return msg

    def publish_transform(self, record: TransformRecord):
        t = TransformStamped()
        t.header.stamp = stamp_to_msg(record.stamp)
        t.header.frame_id = record.parent_frame
        t.child_frame_id = record.child_frame
        t.transform.translation.x, t.transform.translation.y, t.transform.translation.z = \
            record.translation
        (t.transform.rotation.x, t.transform.rotation.y,
         t.transform.rotation.z, t.transform.rotation.w) = record.rotation
        self.tf_broadcaster.sendTransform(t)

    def destroy_node(self):
        self.get_logger().info("Stopping simulated agents...")
        self.manager.stop()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)

    executor = MultiThreadedExecutor()

    node = KinematicSimNode()
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
