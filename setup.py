from setuptools import setup
import os
from glob import glob

package_name = 'scarab_drive'

setup(
    name=package_name,
    version='1.0.0',
    packages=[package_name],
    data_files=[
        ('share/ament_index/resource_index/packages',
            ['resource/' + package_name]),
        ('share/' + package_name, ['package.xml']),
        (os.path.join('share', package_name, 'launch'), glob('launch/*.launch.py')),
        (os.path.join('share', package_name, 'config'), glob('config/*.yaml')),
    ],
    install_requires=['setuptools', 'numpy', 'pyserial', 'PyYAML'],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='Robot Developer',
    maintainer_email='your.email@example.com',
    description='ROS 2 package for RoboClaw differential drive control, wheel odometry and kinematic simulation',
    license='MIT',
    tests_require=['pytest'],
    entry_points={
        'console_scripts': [
            'roboclaw_node = scarab_drive.roboclaw_node:main',
            'kinematic_sim_node = scarab_drive.kinematic_sim_node:main',
        ],
    },
)
