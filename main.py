"""sftpfutures entry point.

Runs the command line interface from :mod:`sftpfutures.cli`::

    python main.py --host example.org --user me ls /home/me
"""

from sftpfutures.cli import app

if __name__ == "__main__":
    app()
