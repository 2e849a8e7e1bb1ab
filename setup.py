import os
import sys

from setuptools import setup

# Don't import the hogclient package here, since deps may not be installed
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "hogclient"))
from version import VERSION  # noqa: E402

long_description = """
hogclient captures product analytics events and evaluates feature flags,
locally against polled flag definitions or remotely.

This package requires Python 3.10 or higher.
"""

install_requires = [
    "requests>=2.7,<3.0",
    "urllib3>=1.26",
    "backoff>=1.10.0",
    "python-dateutil>=2.2",
    "distro>=1.5.0",
    "typing-extensions>=4.2.0",
]

tests_require = [
    "pytest",
    "mock>=2.0.0",
    "parameterized>=0.8.1",
    "freezegun==1.5.1",
]

setup(
    name="hogclient",
    version=VERSION,
    url="https://github.com/hogclient/hogclient-python",
    author="hogclient",
    maintainer="hogclient",
    license="MIT License",
    description="Capture analytics events and evaluate feature flags from any python application.",
    long_description=long_description,
    packages=["hogclient", "hogclient.test"],
    python_requires=">=3.10",
    install_requires=install_requires,
    tests_require=tests_require,
    extras_require={"test": tests_require},
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
)
