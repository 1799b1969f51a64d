from mnemo.server import main

main()
