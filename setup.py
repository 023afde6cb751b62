#!/usr/bin/env python

from setuptools import setup

with open('README.md') as readme_file:
    readme = readme_file.read()

with open('xtps/VERSION') as f:
    version = f.read().lstrip().rstrip()

setup(
    name='xtps',
    version=version,
    author='Netherlands Forensic Institute',
    description="TPS database file reader with encryption key recovery",
    long_description=readme+"\n\n",
    packages=['xtps'],
    classifiers=[
        'License :: OSI Approved :: MIT License',
        'Development Status :: 4 - Beta',
        'Programming Language :: Python :: 3 :: Only',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering :: Information Analysis',
        'Environment :: Console'
        ],
    keywords='forensic database tps topspeed clarion',
    entry_points={
        'console_scripts': ['xtps=xtps._cmdline:main'],
        },
    install_requires=[
        'bitstring>=3.1.3,<5',
        'numpy',
        'xlsxwriter',
    ],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=False,
    package_data={
        # include the VERSION file
        'xtps': ['VERSION'],
    }
)
