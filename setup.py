from setuptools import find_packages, setup

tests_require = [
    'pytest>=7.0',
]

setup(
    name='profcore',
    version='0.1.0',
    packages=find_packages('src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'Pillow>=9.0',
        'requests>=2.21.0',
    ],
    entry_points='''
        [console_scripts]
        profcore=profcore.cli:run
    ''',
    tests_require=tests_require,
    extras_require={
        'test': tests_require,
    }
)
