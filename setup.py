"""Build pairlink package."""
import setuptools

with open('README.md') as f:
    long_desc = f.read()

setuptools.setup(
    name='pairlink',
    version='0.1.0',
    description='Two-party room pairing and WebRTC signaling',
    long_description=long_desc,
    long_description_content_type='text/markdown',
    packages=setuptools.find_packages(exclude=['tests*', 'testing*']),
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    install_requires=[
        'aiortc>=1.9.0',
        'click',
        'cryptography',
        'pydantic>=2',
        'pyee>=11',
        'tomli ; python_version<"3.11"',
        'tomli-w',
        'typing-extensions ; python_version<"3.11"',
        'websockets>=13.0',
    ],
    extras_require={
        'dev': [
            'pytest',
            'pytest-asyncio>=0.23',
            'pytest-timeout',
            'uvloop ; sys_platform!="win32"',
        ],
    },
    entry_points={
        'console_scripts': [
            'pairlink-server=pairlink.signaling.run:cli',
            'pairlink-chat=pairlink.client.chat:cli',
        ],
    },
)
