# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Generate a docker-cinder package that can be installed onto compute
instances running Docker.
"""

from setuptools import setup, find_packages

with open("README.rst") as readme:
    description = readme.read()


def parse_requirements(requirements_file):
    """
    Parse a requirements file.

    Blank lines and comments are skipped; every other line is a requirement
    specifier.
    """
    requirements = []
    with open(requirements_file) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            requirements.append(line)
    return requirements


# Parse the ``.in`` files. This will allow the dependencies to float when
# docker-cinder is installed using ``pip install .``.
install_requires = parse_requirements("requirements/docker-cinder.txt.in")
dev_requires = parse_requirements("requirements/docker-cinder-dev.txt.in")

setup(
    # This is the human-targetted name of the software being packaged.
    name="docker-cinder",
    # This is a string giving the version of the software being packaged.  For
    # simplicity it should be something boring like X.Y.Z.
    version="1.0.0",
    # This identifies the creators of this software.  This is left symbolic for
    # ease of maintenance.
    author="ClusterHQ Team",
    # This is contact information for the authors.
    author_email="support@clusterhq.com",
    # Here is a website where more information about the software is available.
    url="https://clusterhq.com/",

    # A short identifier for the license under which the project is released.
    license="Apache License, Version 2.0",

    long_description=description,

    python_requires=">=3.8",

    # This setuptools helper will find everything that looks like a *Python*
    # package (in other words, things that can be imported) which are part of
    # the docker-cinder package.
    packages=find_packages(include=('dockercinder', 'dockercinder.*')),

    package_data={
        # These files are used by the Docker plugin API:
        'dockercinder.dockerplugin': ['schema/*.yml'],
    },

    entry_points={
        # These are the command-line programs we want setuptools to install.
        'console_scripts': [
            'docker-cinder-plugin = ' +
            'dockercinder.dockerplugin._script:docker_cinder_plugin_main',
        ],
    },

    install_requires=install_requires,

    extras_require={
        # This extra is for developers who need to work on docker-cinder
        # itself.
        "dev": dev_requires,
    },

    # Some "trove classifiers" which are relevant.
    classifiers=[
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        ],
    )
