"""
Setup script for RetroChat - Ephemeral end-to-end encrypted chat.

This messenger provides:
- Sessions set up from a single 12-character code
- AES-256-GCM encryption with a key derived from the code
- Three interchangeable transports: WebRTC mesh via public trackers,
  WebRTC via a signaling server, and an MQTT-over-WebSocket relay
- Automatic failover across servers and reconnection after drops
- Typing indicators and read receipts
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='retrochat',
    version='1.0.0',
    author='retrochat contributors',
    description='Ephemeral end-to-end encrypted chat over WebRTC or an MQTT relay, set up with a short code',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
        'Framework :: AsyncIO',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'aiortc>=1.9.0',
        'websockets>=13.0',
        'aiomqtt>=2.0.0',
        'tomli>=2.0.0; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'retrochat=retrochat.main:main',
        ],
    },
)
