from setuptools import setup, find_packages

setup(
    name='tallyclock',
    version='0.1.0',
    description='Tally distribution core for NTP studio clock displays',
    package_dir={'':'src'},
    packages=find_packages('src'),
    python_requires='>=3.8',
    install_requires=[
        'loguru',
        'python-dispatch',
        'jsonfactory',
    ],
    extras_require={
        'piface':['pifacedigitalio'],
        'test':['pytest', 'pytest-asyncio'],
    },
    entry_points={
        'console_scripts':[
            'tallyclock = tallyclock.main:run',
        ],
    },
)
