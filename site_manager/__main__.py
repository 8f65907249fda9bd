from site_manager.cli import main

main()
