#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1-or-later

from setuptools import setup, find_packages

setup(
    name="ukiforge",
    version="1.0",
    description="Assemble signed Unified Kernel Image artifacts and secure boot key sets",
    license="LGPLv2+",
    python_requires=">=3.9",
    packages = find_packages(".", exclude=["tests"]),
    package_data = {"ukiforge": ["resources/vendor-certs/*/*.der"]},
    include_package_data = True,
    install_requires = ["cryptography>=3.2"],
    extras_require = {"test": ["pytest"]},
    entry_points = { "console_scripts": ["ukiforge = ukiforge.__main__:main"] },
)
