from reclaim.operator import main

main()
