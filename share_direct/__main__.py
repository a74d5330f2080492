from share_direct.uploader import main

main()
