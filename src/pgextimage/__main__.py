from pgextimage.cli import main

main()
