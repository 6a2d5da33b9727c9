from zfs2s3.cli import main

main()
