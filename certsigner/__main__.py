from certsigner.worker import main

main()
