#!/usr/bin/env python3
"""Runner for a source checkout"""
from zfs2s3.cli import main

if __name__ == '__main__':
    main()
