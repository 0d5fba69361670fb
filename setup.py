from setuptools import setup

setup(name='orthograph',
      version='0.1',
      description='Reciprocal best-hit search for orthologs of reference ortholog groups in transcriptomes',
      author='Sapphyre TEAM',
      license='GPL3',
      packages=['orthograph', 'orthograph.rocky'],
      python_requires='>=3.9',
      zip_safe=False,
      entry_points={
        'console_scripts': [
            'orthograph = orthograph.__main__:main',
        ],
    },
    install_requires=[
        "wrap_rocks>=0.3.7",
        "biopython>=1.79",
        "numpy>=1.23.3",
        "needletail>=0.5.0",
        "pandas>=2.1.1",
        "msgspec>=0.18.2",
        "xxhash>=3.3.0",
        "isal>=1.3.0",
        "tqdm>=4.66.1",
        "tomli>=2.0.1; python_version < '3.11'",
    ],
    extras_require={
        'test': [
            "pytest>=7.4.0",
        ],
    },
)
