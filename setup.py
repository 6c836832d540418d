"""Install descil as a library and command line utility."""

from setuptools import setup

setup_args = dict(
    name='descil',
    packages=['descil'],
    version="1.0.0",
    description='Connector for the DeSciL turker authentication service',
    url='http://www.descil.ethz.ch/',
    license='MIT',
    keywords=['science', 'experiments', 'mturk', 'crowdsourcing', 'psychology'],
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Framework :: Pytest',
    ],
    python_requires='>=3.8',
    package_data={'descil': ['default_configs/*.txt']},
    include_package_data=True,
    zip_safe=False,
    install_requires=[
        "click",
        "gevent",
        "requests>=2.27",
        "tabulate",
    ],
    entry_points={
        'console_scripts': [
            'descil = descil.command_line:descil',
        ],
    },
    extras_require={
        'dev': [
            "coverage",
            "flake8",
            "pytest",
        ]
    }
)

setup(**setup_args)
