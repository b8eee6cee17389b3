from indexer_toolkit.cli import main

main()
