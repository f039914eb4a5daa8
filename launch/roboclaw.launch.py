#!/usr/bin/env python3
"""
Launch file for the RoboClaw differential drive node
"""

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration, PathJoinSubstitution
from launch_ros.actions import Node
from launch_ros.substitutions import FindPackageShare


def generate_launch_description():
    """Generate launch description for the RoboClaw driver"""

    declare_config_file = DeclareLaunchArgument(
        'config_file',
        default_value=PathJoinSubstitution([
            FindPackageShare('scarab_drive'),
            'config',
            'roboclaw_params.yaml'
        ]),
        description='Path to RoboClaw driver parameter file'
    )

    declare_portname = DeclareLaunchArgument(
        'portname',
        default_value='/dev/roboclaw',
        description='Serial device of the RoboClaw'
    )

    declare_odom_frame = DeclareLaunchArgument(
        'odom_frame',
        default_value='odom',
        description='Odometry frame'
    )

    declare_base_frame = DeclareLaunchArgument(
        'base_frame',
        default_value='base',
        description='Robot base frame'
    )

    roboclaw_node = Node(
        package='scarab_drive',
        executable='roboclaw_node',
        name='roboclaw_node',
        parameters=[
            LaunchConfiguration('config_file'),
            {
                'portname': LaunchConfiguration('portname'),
                'odom_frame': LaunchConfiguration('odom_frame'),
                'base_frame': LaunchConfiguration('base_frame'),
            }
        ],
        output='screen',
        emulate_tty=True,
    )

    return LaunchDescription([
        declare_config_file,
        declare_portname,
        declare_odom_frame,
        declare_base_frame,
        roboclaw_node,
    ])
