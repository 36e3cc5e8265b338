from setuptools import setup, find_packages

setup(
    name='k3sctl',
    version='0.1.0',
    packages=find_packages(exclude=['examples']),
    include_package_data=True,
    package_data={
        'k3sctl.modules.k3s': ['templates/*'],
    },
    install_requires=[
        'typer>=0.9',
        'rich',
        'pyyaml',
        'paramiko',
        'pydantic>=2',
        'jinja2',
        'jsonschema',
        'python-dotenv',
        'tenacity',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'k3sctl=k3sctl.cli:app'
        ]
    },
    description='Lifecycle orchestration for K3s clusters behind an Nginx TCP proxy',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
