from library_app.cli import main

main()
