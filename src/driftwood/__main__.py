from driftwood.cli.main import main

main()
