#!/usr/bin/env python3
"""
Launch file for the multi-agent kinematic simulator
"""

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration, PathJoinSubstitution
from launch_ros.actions import Node
from launch_ros.substitutions import FindPackageShare


def generate_launch_description():
    """Generate launch description for the kinematic simulator"""

    declare_config_file = DeclareLaunchArgument(
        'config_file',
        default_value=PathJoinSubstitution([
            FindPackageShare('scarab_drive'),
            'config',
            'kinematic_sim_params.yaml'
        ]),
        description='Path to simulator parameter file (agents and rates)'
    )

    kinematic_sim_node = Node(
        package='scarab_drive',
        executable='kinematic_sim_node',
        name='kinematic_sim',
        parameters=[LaunchConfiguration('config_file')],
        output='screen',
        emulate_tty=True,
    )

    return LaunchDescription([
        declare_config_file,
        kinematic_sim_node,
    ])
