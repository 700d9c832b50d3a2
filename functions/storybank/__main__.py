from storybank.app import main

main()
